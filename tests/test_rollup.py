"""Tests for peptide to protein rollup."""

import pytest
import pandas as pd
import numpy as np

from flash_lfq.data_model import DetectionType, Peptide, ProteinGroup, SpectraFile
from flash_lfq.rollup import (
    MedianPolishResult,
    MedianPolishWeightedEstimator,
    TopNEstimator,
    quantify_proteins,
    rollup_top_n,
    tukey_median_polish,
)


def _log_matrix(rows: dict) -> pd.DataFrame:
    """log2 peptide x file matrix with file positions as columns, like the engine builds."""
    linear = pd.DataFrame.from_dict(rows, orient='index')
    linear.columns = range(linear.shape[1])
    return np.log2(linear)


class TestTukeyMedianPolish:
    """Tests for Tukey median polish on peptide x file matrices."""

    def test_fold_change_becomes_file_effect(self):
        """Peptides that all double between files leave no residual."""
        matrix = _log_matrix({
            'PEPTIDE': [1e6, 2e6],
            'MYPEPTIDE': [4e6, 8e6],
            'VVVVVPEPTIDE': [5e5, 1e6],
        })

        result = tukey_median_polish(matrix)

        assert isinstance(result, MedianPolishResult)
        assert result.converged
        assert result.col_effects[1] - result.col_effects[0] == pytest.approx(1.0)
        assert result.row_effects['MYPEPTIDE'] - result.row_effects['PEPTIDE'] == pytest.approx(2.0)
        assert np.allclose(result.residuals.values, 0.0)

    def test_interfered_peptide_isolated_in_residuals(self):
        """A co-eluting interference in one file shows up as that peptide's residual."""
        matrix = _log_matrix({
            'PEPTIDE': [1e6, 2e6, 4e6],
            'PEPTIDEV': [3e6, 6e6, 12e6],
            'PEPTIDEVV': [2e5, 4e5, 8e5],
            'MYPEPTIDE': [5e7, 2e6, 4e6],  # 50x interference in file 0
        })

        result = tukey_median_polish(matrix)

        assert result.col_effects[1] - result.col_effects[0] == pytest.approx(1.0)
        assert result.col_effects[2] - result.col_effects[1] == pytest.approx(1.0)
        summary = result.get_row_residual_summary()
        assert summary['residual_max_abs'].idxmax() == 'MYPEPTIDE'
        assert summary.loc['PEPTIDE', 'residual_max_abs'] == pytest.approx(0.0)

    def test_peptide_missing_in_a_file(self):
        """Undetected peptides (NaN) do not leak NaN into the file effects."""
        matrix = _log_matrix({
            'PEPTIDE': [1e6, np.nan, 4e6],
            'PEPTIDEV': [2e6, 4e6, np.nan],
            'PEPTIDEVV': [1e6, 2e6, 4e6],
        })

        result = tukey_median_polish(matrix)

        assert len(result.col_effects) == 3
        assert not result.col_effects.isna().any()
        assert result.col_effects[2] > result.col_effects[0]


class TestTopN:
    """Tests for Top-N rollup."""

    def test_sum_of_top_three(self):
        matrix = pd.DataFrame({
            0: [1e6, 8e5, 6e5, 4e5, 2e5],
            1: [1.2e6, 1e6, 8e5, 6e5, 4e5],
            2: [1.1e6, 9e5, np.nan, 5e5, 3e5],  # MYPEPTIDE not detected
        }, index=['PEPTIDE', 'PEPTIDEV', 'MYPEPTIDE', 'PEPTIDEVV', 'VVVVVPEPTIDE'])

        result = rollup_top_n(matrix, n=3)

        assert result[0] == pytest.approx(2.4e6)
        assert result[1] == pytest.approx(3e6)
        # skips nan
        assert result[2] == pytest.approx(2.5e6)

    def test_mean_aggregation(self):
        matrix = pd.DataFrame({
            0: [1e6, 8e5, 6e5, 4e5],
        }, index=['PEPTIDE', 'PEPTIDEV', 'MYPEPTIDE', 'PEPTIDEVV'])

        result = rollup_top_n(matrix, n=3, aggregation='mean')

        assert result[0] == pytest.approx(8e5)

    def test_fewer_peptides_than_n(self):
        matrix = pd.DataFrame({
            0: [1e6, 8e5],
            1: [1.2e6, 0.0],  # zero intensity is not a detection
            2: [np.nan, np.nan],
        }, index=['PEPTIDE', 'MYPEPTIDE'])

        result = rollup_top_n(matrix, n=5)

        assert result[0] == pytest.approx(1.8e6)
        assert result[1] == pytest.approx(1.2e6)
        assert result[2] == 0.0

    @pytest.mark.parametrize("kwargs", [{'n': 0}, {'aggregation': 'median'}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            TopNEstimator(**kwargs)


class TestWeightedEstimator:
    """Tests for the median-polish weighted estimator."""

    def test_discordant_peptide_downweighted(self):
        """A peptide whose ratio disagrees with the others gets no weight."""
        matrix = pd.DataFrame(
            [[1e6, 2e6], [1e6, 2e6], [1e6, 0.9e6]],
            index=['PEPTIDE', 'MYPEPTIDE', 'VVVVVPEPTIDE'],
        )
        estimator = MedianPolishWeightedEstimator()

        weights = estimator.peptide_weights(matrix)
        result = estimator.estimate(matrix)

        assert weights['PEPTIDE'] == pytest.approx(1.0)
        assert weights['VVVVVPEPTIDE'] == 0.0
        assert result[0] == pytest.approx(2e6)
        assert result[1] == pytest.approx(4e6)

    def test_concordant_peptides_summed(self):
        matrix = pd.DataFrame([[1e6, 2e6], [3e6, 6e6]], index=['A', 'B'])

        result = MedianPolishWeightedEstimator().estimate(matrix)

        assert list(result) == pytest.approx([4e6, 8e6])

    def test_single_peptide(self):
        matrix = pd.DataFrame([[1e6, np.nan]], index=['A'])

        result = MedianPolishWeightedEstimator().estimate(matrix)

        assert result[0] == pytest.approx(1e6)
        assert result[1] == 0.0

    def test_empty_matrix(self):
        matrix = pd.DataFrame([[np.nan, np.nan]], index=['A'])

        result = MedianPolishWeightedEstimator().estimate(matrix)

        assert list(result) == [0.0, 0.0]


@pytest.fixture
def files(tmp_path):
    return [SpectraFile(str(tmp_path / f"f{i}.mzML"), "a", i) for i in range(2)]


def _peptide(seq, groups, intensities, detections, files, use_for_protein_quant=True):
    pep = Peptide(seq, seq, groups, use_for_protein_quant)
    for f, intensity, detection in zip(files, intensities, detections):
        pep.set_intensity(f, intensity)
        pep.set_detection_type(f, detection)
    return pep


MSMS = DetectionType.MSMS
MBR = DetectionType.MBR
AMBIGUOUS = DetectionType.MSMS_AMBIGUOUS_PEAKFINDING


class TestQuantifyProteins:
    """Protein intensities from peptide results."""

    def test_top_n_sum(self, files):
        pg = ProteinGroup("P1")
        peptides = {
            'AAA': _peptide('AAA', (pg,), [1e6, 2e6], [MSMS, MSMS], files),
            'CCC': _peptide('CCC', (pg,), [3e6, 1e6], [MSMS, MSMS], files),
        }

        quantify_proteins(peptides, {"P1": pg}, files, TopNEstimator(3))

        assert pg.get_intensity(files[0]) == pytest.approx(4e6)
        assert pg.get_intensity(files[1]) == pytest.approx(3e6)

    def test_mbr_only_file_reports_zero(self, files):
        pg = ProteinGroup("P1")
        peptides = {'AAA': _peptide('AAA', (pg,), [1e6, 1e6], [MSMS, MBR], files)}

        quantify_proteins(peptides, {"P1": pg}, files, TopNEstimator(3))

        assert pg.get_intensity(files[0]) == pytest.approx(1e6)
        assert pg.get_intensity(files[1]) == 0.0

    def test_mbr_counts_alongside_msms(self, files):
        pg = ProteinGroup("P1")
        peptides = {
            'AAA': _peptide('AAA', (pg,), [1e6, 1e6], [MSMS, MSMS], files),
            'CCC': _peptide('CCC', (pg,), [1e6, 2e6], [MSMS, MBR], files),
        }

        quantify_proteins(peptides, {"P1": pg}, files, TopNEstimator(3))

        assert pg.get_intensity(files[1]) == pytest.approx(3e6)

    def test_shared_peptides(self, files):
        pg1, pg2 = ProteinGroup("P1"), ProteinGroup("P2")
        peptides = {
            'AAA': _peptide('AAA', (pg1,), [1e6, 1e6], [MSMS, MSMS], files),
            'SHARED': _peptide('SHARED', (pg1, pg2), [5e6, 5e6], [MSMS, MSMS], files),
        }
        groups = {"P1": pg1, "P2": pg2}

        quantify_proteins(peptides, groups, files, TopNEstimator(3))
        assert pg1.get_intensity(files[0]) == pytest.approx(1e6)
        assert pg2.get_intensity(files[0]) == 0.0

        quantify_proteins(peptides, groups, files, TopNEstimator(3), use_shared_peptides=True)
        assert pg1.get_intensity(files[0]) == pytest.approx(6e6)
        assert pg2.get_intensity(files[0]) == pytest.approx(5e6)

    def test_excluded_peptides(self, files):
        """Peptides not flagged for protein quant and ambiguous detections are skipped."""
        pg = ProteinGroup("P1")
        peptides = {
            'AAA': _peptide('AAA', (pg,), [1e6, 1e6], [MSMS, MSMS], files),
            'NOQUANT': _peptide('NOQUANT', (pg,), [9e6, 9e6], [MSMS, MSMS], files,
                                use_for_protein_quant=False),
            'AMBIG': _peptide('AMBIG', (pg,), [0.0, 7e6], [AMBIGUOUS, AMBIGUOUS], files),
        }

        quantify_proteins(peptides, {"P1": pg}, files, TopNEstimator(3))

        assert pg.get_intensity(files[0]) == pytest.approx(1e6)
        assert pg.get_intensity(files[1]) == pytest.approx(1e6)

    def test_protein_without_peptides(self, files):
        pg = ProteinGroup("P1")

        quantify_proteins({}, {"P1": pg}, files, MedianPolishWeightedEstimator())

        assert pg.get_intensity(files[0]) == 0.0
        assert pg.get_intensity(files[1]) == 0.0
