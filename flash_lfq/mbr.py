"""
Match-between-runs peak recovery.

For each acceptor file, every modified sequence that was confidently quantified
by MS/MS elsewhere but has no MS/MS identification in the acceptor is searched
for near its projected retention time. Recovered peaks keep the donor's
identifications, but their intensity is measured from the acceptor's own trace.

Acceptors are independent of one another and are processed on a thread pool;
results are collected in file order so the output does not depend on
scheduling.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Optional

import numpy as np

from .alignment import RtAlignment
from .data_model import ChromatographicPeak, SpectraFile
from .isotopes import IsotopeDistributionCache
from .peak_builder import PeakBuilder, PeakBuilderParams
from .spectral_index import SpectralIndex

logger = logging.getLogger(__name__)


def best_msms_peaks(peaks: list[ChromatographicPeak]) -> dict[str, ChromatographicPeak]:
    """Most intense non-ambiguous MS/MS peak per modified sequence."""
    best: dict[str, ChromatographicPeak] = {}
    for peak in peaks:
        if peak.is_mbr_peak or peak.is_ambiguous or peak.apex is None:
            continue
        seq = peak.identifications[0].modified_sequence
        stored = best.get(seq)
        if stored is None or peak.intensity > stored.intensity:
            best[seq] = peak
    return best


class MatchBetweenRunsResolver:
    """Recovers peaks for peptides identified in other runs.

    Args:
        indices: Spectral index of every file
        isotopes: Pre-populated isotope distribution cache
        params: Peak finding constants (the ppm tolerance is replaced by
            ``ppm_tolerance`` for the recovery search)
        rt_window: Half-width (minutes) of the search window around the
            projected retention time
        ppm_tolerance: Mass tolerance for the recovery search
        require_msms_id_in_condition: Only recover into files whose condition
            has an MS/MS identification of the peptide in another file
    """

    def __init__(
        self,
        indices: dict[SpectraFile, SpectralIndex],
        isotopes: IsotopeDistributionCache,
        params: Optional[PeakBuilderParams] = None,
        rt_window: float = 1.0,
        ppm_tolerance: float = 10.0,
        require_msms_id_in_condition: bool = False,
    ):
        self.indices = indices
        self.isotopes = isotopes
        self.params = replace(params or PeakBuilderParams(), ppm_tolerance=ppm_tolerance)
        self.rt_window = rt_window
        self.require_msms_id_in_condition = require_msms_id_in_condition

    def resolve(
        self,
        peaks: dict[SpectraFile, list[ChromatographicPeak]],
        alignments: dict[tuple[SpectraFile, SpectraFile], RtAlignment],
        max_workers: int = 1,
    ) -> dict[SpectraFile, list[ChromatographicPeak]]:
        """MBR peaks per acceptor file. Input peak lists are not modified."""
        files = list(peaks)
        donors = {f: best_msms_peaks(peaks[f]) for f in files}

        identified: dict[SpectraFile, set[str]] = {
            f: {i.modified_sequence for p in peaks[f] for i in p.identifications if not p.is_mbr_peak}
            for f in files
        }

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {
                f: pool.submit(self.resolve_file, f, peaks[f], donors, identified, alignments)
                for f in files
            }
            recovered = {f: futures[f].result() for f in files}

        total = sum(len(v) for v in recovered.values())
        logger.debug(f"Match-between-runs recovered {total} peaks across {len(files)} files")
        return recovered

    def resolve_file(
        self,
        acceptor: SpectraFile,
        acceptor_peaks: list[ChromatographicPeak],
        donors: dict[SpectraFile, dict[str, ChromatographicPeak]],
        identified: dict[SpectraFile, set[str]],
        alignments: dict[tuple[SpectraFile, SpectraFile], RtAlignment],
    ) -> list[ChromatographicPeak]:
        index = self.indices[acceptor]
        builder = PeakBuilder(index, self.isotopes, self.params)

        # sequences to recover and the best aligned donor peak for each
        candidates: dict[str, tuple[ChromatographicPeak, RtAlignment]] = {}
        for donor_file, best in donors.items():
            if donor_file == acceptor:
                continue
            alignment = alignments.get((donor_file, acceptor))
            if alignment is None:
                continue
            for seq, peak in best.items():
                if seq in identified[acceptor]:
                    continue
                if self.require_msms_id_in_condition and not self._seen_in_condition(
                        seq, acceptor, identified):
                    continue
                stored = candidates.get(seq)
                if stored is None or peak.intensity > stored[0].intensity:
                    candidates[seq] = (peak, alignment)

        mbr_peaks = []
        for seq in sorted(candidates):
            donor_peak, alignment = candidates[seq]
            peak = self.recover_peak(builder, donor_peak, alignment)
            if peak is not None:
                mbr_peaks.append(peak)

        return self._resolve_apex_collisions(acceptor_peaks, mbr_peaks)

    def _seen_in_condition(self, seq, acceptor, identified) -> bool:
        return any(
            f.condition == acceptor.condition and seq in seqs
            for f, seqs in identified.items()
            if f != acceptor
        )

    def recover_peak(
        self,
        builder: PeakBuilder,
        donor_peak: ChromatographicPeak,
        alignment: RtAlignment,
    ) -> Optional[ChromatographicPeak]:
        """Search the acceptor near the projected RT of ``donor_peak``."""
        ident = donor_peak.identifications[0]
        index = builder.index
        predicted_rt = alignment.project(donor_peak.apex_retention_time)
        rt_low, rt_high = predicted_rt - self.rt_window, predicted_rt + self.rt_window

        first, last = index.scan_range_for_window(rt_low, rt_high)
        if first > last:
            return None

        # seed at the most intense envelope inside the window
        distribution = builder.distribution_for(ident)
        charge = ident.precursor_charge
        mono_mz = distribution.mz_values(ident.monoisotopic_mass, charge)[0]
        scans = sorted({p.zero_based_scan_index for p in index.query(
            mono_mz, self.params.ppm_tolerance, first, last)})

        seed = None
        for scan in scans:
            env = builder.detector.find_envelope(distribution, ident.monoisotopic_mass, charge, scan)
            if env is not None and (seed is None or env.intensity > seed.intensity):
                seed = env
        if seed is None:
            return None

        peak = builder.build_peak(
            ident,
            seed_scan=seed.scan_index,
            identification_time=seed.retention_time,
            is_mbr_peak=True,
        )
        for other in donor_peak.identifications[1:]:
            if other not in peak.identifications:
                peak.identifications.append(other)
        peak.resolve_identifications()
        peak.predicted_rt = predicted_rt

        if peak.apex is None or not rt_low <= peak.apex_retention_time <= rt_high:
            return None
        return peak

    @staticmethod
    def _resolve_apex_collisions(
        msms_peaks: list[ChromatographicPeak],
        mbr_peaks: list[ChromatographicPeak],
    ) -> list[ChromatographicPeak]:
        """Drop MBR peaks that reuse an MS/MS apex; one MBR peak per apex."""
        taken = {p.apex.indexed_peak for p in msms_peaks if p.apex is not None}

        by_apex: dict = {}
        for peak in mbr_peaks:
            key = peak.apex.indexed_peak
            if key in taken:
                continue
            stored = by_apex.get(key)
            if stored is None or _prediction_error(peak) < _prediction_error(stored):
                by_apex[key] = peak
        return sorted(by_apex.values(), key=lambda p: p.identifications[0].modified_sequence)


def _prediction_error(peak: ChromatographicPeak) -> float:
    if peak.predicted_rt is None:
        return np.inf
    return abs(peak.apex_retention_time - peak.predicted_rt)
