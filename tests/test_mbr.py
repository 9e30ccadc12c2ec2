"""Tests for match-between-runs peak recovery."""

import numpy as np
import pytest

from flash_lfq.alignment import RetentionTimeAligner, RtAlignment
from flash_lfq.data_model import DetectionType, ProteinGroup, SpectraFile
from flash_lfq.engine import FlashLfqEngine
from flash_lfq.isotopes import IsotopeDistributionCache
from flash_lfq.mbr import MatchBetweenRunsResolver
from flash_lfq.peak_builder import PeakBuilder
from flash_lfq.spectral_index import SpectralIndex
from flash_lfq.testing import (
    PEPTIDE_MASSES,
    InMemoryScanLoader,
    make_identification,
    one_peptide_per_scan,
)

SEQUENCES = ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVV', 'PEPTIDEVVV', 'PEPTIDEVVVV']
FILE1_RT = [1.01, 1.02, 1.03, 1.04, 1.05]
FILE2_RT = [1.00, 1.025, 1.04, 1.055, 1.070]


@pytest.fixture
def loader(tmp_path):
    loader = InMemoryScanLoader()
    loader.add(tmp_path / "mzml_1.mzML", one_peptide_per_scan(SEQUENCES, FILE1_RT))
    loader.add(tmp_path / "mzml_2.mzML", one_peptide_per_scan(SEQUENCES, FILE2_RT))
    return loader


def _identifications(file1, file2, protein_for=lambda seq: ProteinGroup("MyProtein", "gene", "org")):
    ids = [make_identification(file1, seq, rt + 0.001, protein_groups=[protein_for(seq)])
           for seq, rt in zip(SEQUENCES, FILE1_RT)]
    # PEPTIDEVV is not identified in the second file
    ids += [make_identification(file2, seq, rt + 0.001, protein_groups=[protein_for(seq)])
            for seq, rt in zip(SEQUENCES, FILE2_RT) if seq != 'PEPTIDEVV']
    return ids


class TestMatchBetweenRuns:
    """End-to-end recovery of a peptide missing from one run."""

    def test_recovers_missing_peptide(self, tmp_path, loader):
        file1 = SpectraFile(str(tmp_path / "mzml_1.mzML"), "a", 0, 0, 0)
        file2 = SpectraFile(str(tmp_path / "mzml_2.mzML"), "a", 1, 0, 0)

        engine = FlashLfqEngine(_identifications(file1, file2), scan_loader=loader,
                                match_between_runs=True, max_threads=2)
        results = engine.run()

        assert len(results.peaks[file2]) == 5
        mbr_peaks = [p for p in results.peaks[file2] if p.is_mbr_peak]
        assert len(mbr_peaks) == 1

        peak = mbr_peaks[0]
        donor = next(p for p in results.peaks[file1]
                     if p.identifications[0].base_sequence == peak.identifications[0].base_sequence)
        assert peak.identifications[0].modified_sequence == 'PEPTIDEVV'
        assert peak.intensity > 0
        assert peak.intensity == pytest.approx(donor.intensity)
        assert peak.apex_retention_time == pytest.approx(1.04)
        assert peak.predicted_rt == pytest.approx(1.04)

        assert len(results.peaks[file1]) == 5
        assert not any(p.is_mbr_peak for p in results.peaks[file1])

        pep = results.peptide_modified_sequences['PEPTIDEVV']
        assert pep.get_detection_type(file2) is DetectionType.MBR
        assert pep.get_detection_type(file1) is DetectionType.MSMS

        assert results.protein_groups["MyProtein"].get_intensity(file1) > 0
        assert results.protein_groups["MyProtein"].get_intensity(file2) > 0

    def test_disabled_by_default(self, tmp_path, loader):
        file1 = SpectraFile(str(tmp_path / "mzml_1.mzML"), "a", 0, 0, 0)
        file2 = SpectraFile(str(tmp_path / "mzml_2.mzML"), "a", 1, 0, 0)

        results = FlashLfqEngine(_identifications(file1, file2), scan_loader=loader).run()

        assert len(results.peaks[file2]) == 4
        pep = results.peptide_modified_sequences['PEPTIDEVV']
        assert pep.get_detection_type(file2) is DetectionType.NOT_DETECTED
        assert pep.get_intensity(file2) == 0

    @pytest.mark.parametrize("advanced", [False, True])
    def test_mbr_alone_gives_no_protein_intensity(self, tmp_path, loader, advanced):
        """A protein seen only through a recovered peak reports 0 in that file."""
        file1 = SpectraFile(str(tmp_path / "mzml_1.mzML"), "a", 0, 0, 0)
        file2 = SpectraFile(str(tmp_path / "mzml_2.mzML"), "b", 0, 0, 0)

        def protein_for(seq):
            if seq == 'PEPTIDEVV':
                return ProteinGroup("MyMbrProtein", "MbrGene", "org")
            return ProteinGroup("MyProtein", "gene", "org")

        results = FlashLfqEngine(_identifications(file1, file2, protein_for), scan_loader=loader,
                                 match_between_runs=True, advanced_protein_quant=advanced).run()

        assert any(p.is_mbr_peak for p in results.peaks[file2])
        assert results.protein_groups["MyMbrProtein"].get_intensity(file1) > 0
        assert results.protein_groups["MyMbrProtein"].get_intensity(file2) == 0

    def test_require_msms_id_in_condition(self, tmp_path, loader):
        """With the condition requirement, nothing is recovered across conditions."""
        file1 = SpectraFile(str(tmp_path / "mzml_1.mzML"), "a", 0, 0, 0)
        file2 = SpectraFile(str(tmp_path / "mzml_2.mzML"), "b", 0, 0, 0)

        results = FlashLfqEngine(_identifications(file1, file2), scan_loader=loader,
                                 match_between_runs=True, require_msms_id_in_condition=True).run()

        assert not any(p.is_mbr_peak for p in results.peaks[file2])


class TestResolver:
    """Resolver behaviour on hand-built peak sets."""

    def _setup(self, tmp_path, loader, acceptor_sequences):
        file1 = SpectraFile(str(tmp_path / "mzml_1.mzML"))
        file2 = SpectraFile(str(tmp_path / "mzml_2.mzML"))
        cache = IsotopeDistributionCache()
        cache.populate((m, None) for m in PEPTIDE_MASSES.values())
        indices = {f: SpectralIndex(f, loader(f)) for f in (file1, file2)}

        peaks = {
            file1: PeakBuilder(indices[file1], cache).quantify_identifications(
                [make_identification(file1, s, rt) for s, rt in zip(SEQUENCES, FILE1_RT)]),
            file2: PeakBuilder(indices[file2], cache).quantify_identifications(
                [make_identification(file2, s, rt) for s, rt in zip(SEQUENCES, FILE2_RT)
                 if s in acceptor_sequences]),
        }
        return file1, file2, cache, indices, peaks

    def test_identified_sequences_not_recovered(self, tmp_path, loader):
        file1, file2, cache, indices, peaks = self._setup(tmp_path, loader, SEQUENCES)
        alignments = RetentionTimeAligner(peaks).align_all([file1, file2])

        recovered = MatchBetweenRunsResolver(indices, cache).resolve(peaks, alignments)

        assert recovered == {file1: [], file2: []}

    def test_single_missing_sequence_recovered(self, tmp_path, loader):
        file1, file2, cache, indices, peaks = self._setup(
            tmp_path, loader, ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVVV', 'PEPTIDEVVVV'])
        alignments = RetentionTimeAligner(peaks).align_all([file1, file2])

        recovered = MatchBetweenRunsResolver(indices, cache).resolve(peaks, alignments, max_workers=2)

        assert recovered[file1] == []
        assert [p.identifications[0].modified_sequence for p in recovered[file2]] == ['PEPTIDEVV']
        assert recovered[file2][0].is_mbr_peak
        # input peak lists are left alone
        assert len(peaks[file2]) == 4

    def test_projection_outside_run_not_recovered(self, tmp_path, loader):
        file1, file2, cache, indices, peaks = self._setup(
            tmp_path, loader, ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVVV', 'PEPTIDEVVVV'])
        alignment = RtAlignment(file1, file2, offset=-5.0, spread=0.0,
                                donor_anchor_rts=np.array([1.0]), shifts=np.array([-5.0]))

        recovered = MatchBetweenRunsResolver(indices, cache).resolve(peaks, {(file1, file2): alignment})

        assert recovered[file2] == []

    def test_mbr_peak_on_msms_apex_dropped(self, tmp_path, loader):
        """A recovered peak may not reuse the apex of an MS/MS peak."""
        file1, file2, cache, indices, peaks = self._setup(
            tmp_path, loader, ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVVV', 'PEPTIDEVVVV'])
        mbr_peak = peaks[file2][0]
        mbr_peak.is_mbr_peak = True
        mbr_peak.predicted_rt = mbr_peak.apex_retention_time

        kept = MatchBetweenRunsResolver._resolve_apex_collisions(peaks[file2], [mbr_peak])

        assert kept == []

    def test_shared_apex_keeps_closest_prediction(self, tmp_path, loader):
        file1, file2, cache, indices, peaks = self._setup(tmp_path, loader, [])
        builder = PeakBuilder(indices[file2], cache)
        seed = indices[file2].scan_index_for_retention_time(1.04)
        ident = make_identification(file1, 'PEPTIDEVV', 1.03)
        near = builder.build_peak(ident, seed_scan=seed, is_mbr_peak=True)
        far = builder.build_peak(ident, seed_scan=seed, is_mbr_peak=True)
        near.predicted_rt, far.predicted_rt = 1.041, 1.2

        kept = MatchBetweenRunsResolver._resolve_apex_collisions([], [far, near])

        assert kept == [near]

    def test_no_alignment_no_recovery(self, tmp_path, loader):
        file1, file2, cache, indices, peaks = self._setup(
            tmp_path, loader, ['PEPTIDE', 'PEPTIDEV', 'PEPTIDEVVV', 'PEPTIDEVVVV'])

        recovered = MatchBetweenRunsResolver(indices, cache).resolve(peaks, {})

        assert recovered[file2] == []
