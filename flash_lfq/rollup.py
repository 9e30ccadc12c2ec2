"""
Peptide to protein-group rollup.

Supports:
- Top-N: sum (or mean) of the N most intense peptides per file
- Weighted: Tukey median polish on log2 intensities, then a bisquare weight per
  peptide from its residuals, so peptides whose file-to-file ratios disagree
  with the rest of the protein do not dominate

Estimators share the ProteinQuantEstimator interface and can be swapped without
touching peak or peptide logic.

Only peptides flagged for protein quantification, unique to the protein group
(unless shared peptides are allowed), and detected by MS/MS or match-between-
runs contribute. A file in which none of a protein's peptides was identified by
MS/MS reports 0 for that protein, so match-between-runs alone never creates
protein evidence.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .data_model import DetectionType, Peptide, ProteinGroup, SpectraFile

logger = logging.getLogger(__name__)

QUANTIFIABLE_DETECTIONS = (DetectionType.MSMS, DetectionType.MBR)


@dataclass
class MedianPolishResult:
    """
    Result of Tukey median polish.

    The residuals matrix captures deviations from the additive model:
        y_ij = μ + α_i + β_j + ε_ij

    Large residuals mark peptides whose behaviour across files disagrees with
    the protein (interference, detection floor, shared sequence).
    """
    overall: float                    # Grand effect (μ)
    row_effects: pd.Series            # Peptide effects (α)
    col_effects: pd.Series            # File effects (β)
    residuals: pd.DataFrame           # Residual matrix (peptides × files)
    n_iterations: int
    converged: bool

    def get_row_residual_summary(self) -> pd.DataFrame:
        """Per-peptide residual magnitude (median and max absolute residual)."""
        abs_res = np.abs(self.residuals.values)
        return pd.DataFrame({
            'residual_median_abs': np.nanmedian(abs_res, axis=1),
            'residual_max_abs': np.nanmax(abs_res, axis=1),
        }, index=self.residuals.index)


def tukey_median_polish(
    matrix: pd.DataFrame,
    max_iter: int = 10,
    tol: float = 1e-4,
) -> MedianPolishResult:
    """
    Apply Tukey's median polish to a peptide × file matrix.

    Model: y_ij = μ + α_i + β_j + ε_ij

    Args:
        matrix: DataFrame with peptides as rows, files as columns.
                Values should be log2 transformed; NaN marks a missing value.
                Every row and column must have at least one value.
        max_iter: Maximum number of iterations
        tol: Convergence tolerance (max absolute change in residuals)

    Returns:
        MedianPolishResult with effects and residuals
    """
    row_idx = matrix.index
    col_idx = matrix.columns

    residuals = matrix.values.copy().astype(float)
    overall = 0.0
    row_effects = np.zeros(len(row_idx))
    col_effects = np.zeros(len(col_idx))

    converged = False
    iteration = 0

    for iteration in range(max_iter):
        old_residuals = residuals.copy()

        # Row sweep
        row_medians = np.nanmedian(residuals, axis=1)
        residuals = residuals - row_medians[:, np.newaxis]
        row_center = np.nanmedian(row_medians)
        row_effects += row_medians - row_center
        overall += row_center

        # Column sweep
        col_medians = np.nanmedian(residuals, axis=0)
        residuals = residuals - col_medians[np.newaxis, :]
        col_center = np.nanmedian(col_medians)
        col_effects += col_medians - col_center
        overall += col_center

        max_change = np.nanmax(np.abs(residuals - old_residuals))
        if max_change < tol:
            converged = True
            break

    result = MedianPolishResult(
        overall=overall,
        row_effects=pd.Series(row_effects, index=row_idx, name='peptide_effect'),
        col_effects=pd.Series(col_effects, index=col_idx, name='file_effect'),
        residuals=pd.DataFrame(residuals, index=row_idx, columns=col_idx),
        n_iterations=iteration + 1,
        converged=converged,
    )

    if not converged:
        logger.warning(f"Median polish did not converge after {max_iter} iterations")

    return result


def rollup_top_n(
    matrix: pd.DataFrame,
    n: int = 3,
    aggregation: str = 'sum',
) -> pd.Series:
    """
    Rollup using the N most intense peptides per file.

    Args:
        matrix: Peptide × file matrix (linear intensities, NaN if missing)
        n: Number of top peptides
        aggregation: 'sum' or 'mean' of the top peptides

    Returns:
        Series of protein intensities per file (0 where no peptide is present)
    """
    def top_n(col):
        valid = col.dropna()
        valid = valid[valid > 0]
        if len(valid) == 0:
            return 0.0
        top = valid.nlargest(min(n, len(valid)))
        return top.sum() if aggregation == 'sum' else top.mean()

    return matrix.apply(top_n, axis=0)


class ProteinQuantEstimator(ABC):
    """Turns a peptide × file intensity matrix into one intensity per file."""

    name = 'estimator'

    @abstractmethod
    def estimate(self, matrix: pd.DataFrame) -> pd.Series:
        """Protein intensity per file column (linear scale, 0 if unquantifiable)."""


class TopNEstimator(ProteinQuantEstimator):
    name = 'top_n'

    def __init__(self, n: int = 3, aggregation: str = 'sum'):
        if n < 1:
            raise ValueError(f"top_n must be at least 1, got {n}")
        if aggregation not in ('sum', 'mean'):
            raise ValueError(f"Unknown top-N aggregation: {aggregation}. Use 'sum' or 'mean'")
        self.n = n
        self.aggregation = aggregation

    def estimate(self, matrix: pd.DataFrame) -> pd.Series:
        return rollup_top_n(matrix, self.n, self.aggregation)


class MedianPolishWeightedEstimator(ProteinQuantEstimator):
    """Bisquare-weighted peptide sum with weights from median polish residuals.

    Each peptide's disagreement with the protein is the median absolute
    residual of its row. With s = MAD_SCALE * median(disagreements), floored
    at ``min_scale``, a peptide with disagreement r gets weight
    (1 - (r / (c * s))^2)^2, or 0 beyond c * s. The protein intensity in a file
    is the weighted sum of the peptide intensities present in that file.
    """

    name = 'weighted'

    MAD_SCALE = 1.4826

    def __init__(self, tuning_constant: float = 4.685, min_scale: float = 0.1, max_iter: int = 10):
        self.tuning_constant = tuning_constant
        self.min_scale = min_scale
        self.max_iter = max_iter

    def peptide_weights(self, matrix: pd.DataFrame) -> pd.Series:
        log_matrix = np.log2(matrix.where(matrix > 0))
        log_matrix = log_matrix.dropna(how='all', axis=0).dropna(how='all', axis=1)
        weights = pd.Series(0.0, index=matrix.index)
        if log_matrix.empty:
            return weights
        if len(log_matrix) == 1:
            weights[log_matrix.index] = 1.0
            return weights

        polish = tukey_median_polish(log_matrix, max_iter=self.max_iter)
        disagreement = polish.get_row_residual_summary()['residual_median_abs']
        scale = max(self.MAD_SCALE * float(np.median(disagreement)), self.min_scale)
        u = disagreement / (self.tuning_constant * scale)
        w = np.where(u < 1, (1 - u ** 2) ** 2, 0.0)
        weights[log_matrix.index] = w
        return weights

    def estimate(self, matrix: pd.DataFrame) -> pd.Series:
        weights = self.peptide_weights(matrix)
        if not (weights > 0).any():
            return pd.Series(0.0, index=matrix.columns)
        return matrix.fillna(0.0).mul(weights, axis=0).sum(axis=0)


def quantify_proteins(
    peptides: dict[str, Peptide],
    protein_groups: dict[str, ProteinGroup],
    files: Sequence[SpectraFile],
    estimator: ProteinQuantEstimator,
    use_shared_peptides: bool = False,
) -> None:
    """Set every protein group's per-file intensity in place.

    Args:
        peptides: Peptide aggregates keyed by modified sequence
        protein_groups: Protein groups keyed by accession (results-store copies)
        files: Spectra files in output order
        estimator: Peptide to protein estimator
        use_shared_peptides: Let peptides mapped to several groups contribute
    """
    by_protein: dict[str, list[Peptide]] = {acc: [] for acc in protein_groups}
    for pep in sorted(peptides.values(), key=lambda p: p.sequence):
        if not pep.use_for_protein_quant:
            continue
        if len(pep.protein_groups) > 1 and not use_shared_peptides:
            continue
        for pg in pep.protein_groups:
            if pg.accession in by_protein:
                by_protein[pg.accession].append(pep)

    for accession, pg in protein_groups.items():
        support = by_protein[accession]
        if not support:
            for f in files:
                pg.set_intensity(f, 0.0)
            continue

        values = np.full((len(support), len(files)), np.nan)
        has_msms = np.zeros(len(files), dtype=bool)
        for i, pep in enumerate(support):
            for j, f in enumerate(files):
                detection = pep.get_detection_type(f)
                intensity = pep.get_intensity(f)
                if detection in QUANTIFIABLE_DETECTIONS and intensity > 0:
                    values[i, j] = intensity
                if detection == DetectionType.MSMS:
                    has_msms[j] = True

        matrix = pd.DataFrame(values, index=[p.sequence for p in support], columns=range(len(files)))
        estimates = estimator.estimate(matrix).reindex(range(len(files))).fillna(0.0)

        for j, f in enumerate(files):
            pg.set_intensity(f, float(estimates.iloc[j]) if has_msms[j] else 0.0)

    logger.debug(f"Quantified {len(protein_groups)} protein groups with {estimator.name} estimator")
