"""
Hierarchical intensity normalization over the experimental design.

Normalization is an ordered list of passes. Each pass partitions the files into
groups (files that should agree) and, within a group, into units (the things
being scaled against each other). For each group, every unit gets the factor
that makes its summed intensity over peptides shared by all units of the group
equal to that of the first unit. Factors compose multiplicatively across passes.

Default passes, finest first:

    techrep    groups (condition, biorep, fraction)   units techrep
    fraction   groups (condition, fraction)           units biorep
    biorep     groups (condition,)                    units biorep
    condition  one group                              units condition

A unit's per-peptide intensity is computed per injection series
(condition, biorep, techrep): summed over fractions, then averaged across the
series in the unit.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .data_model import ChromatographicPeak, SpectraFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizationPass:
    """One level of the design: which files are compared, and what is scaled."""
    name: str
    group_key: Callable[[SpectraFile], tuple]
    unit_key: Callable[[SpectraFile], tuple]


DEFAULT_PASSES = (
    NormalizationPass(
        'techrep',
        lambda f: (f.condition, f.biological_replicate, f.fraction),
        lambda f: (f.technical_replicate,),
    ),
    NormalizationPass(
        'fraction',
        lambda f: (f.condition, f.fraction),
        lambda f: (f.biological_replicate,),
    ),
    NormalizationPass(
        'biorep',
        lambda f: (f.condition,),
        lambda f: (f.biological_replicate,),
    ),
    NormalizationPass(
        'condition',
        lambda f: (),
        lambda f: (f.condition,),
    ),
)


@dataclass
class NormalizationResult:
    """Per-file multiplicative factors and a record of what was done."""
    scale_factors: dict[SpectraFile, float]
    method_log: list[str] = field(default_factory=list)


def _series_key(f: SpectraFile) -> tuple:
    return (f.condition, f.biological_replicate, f.technical_replicate)


def peptide_intensity_matrix(
    peaks: dict[SpectraFile, list[ChromatographicPeak]],
    files: Sequence[SpectraFile],
) -> pd.DataFrame:
    """Peptide x file matrix of MS/MS peak intensities.

    Uses the most intense non-ambiguous, non-MBR peak per sequence and file.
    Columns are positions in ``files``; missing values are NaN.
    """
    data: dict[int, dict[str, float]] = {}
    for col, f in enumerate(files):
        best: dict[str, float] = {}
        for peak in peaks.get(f, []):
            if peak.is_mbr_peak or peak.is_ambiguous or peak.intensity <= 0:
                continue
            seq = peak.identifications[0].modified_sequence
            best[seq] = max(best.get(seq, 0.0), peak.intensity)
        data[col] = best
    matrix = pd.DataFrame(data, columns=range(len(files)), dtype=float)
    return matrix.sort_index()


def _unit_profile(matrix: pd.DataFrame, columns: list[int], files: Sequence[SpectraFile]) -> pd.Series:
    """Per-peptide intensity of one unit: sum over fractions, mean over series."""
    by_series: dict[tuple, list[int]] = defaultdict(list)
    for col in columns:
        by_series[_series_key(files[col])].append(col)
    series_sums = pd.DataFrame({
        i: matrix[by_series[key]].sum(axis=1, min_count=1)
        for i, key in enumerate(sorted(by_series))
    })
    return series_sums.mean(axis=1)


def compute_scale_factors(
    matrix: pd.DataFrame,
    files: Sequence[SpectraFile],
    passes: Sequence[NormalizationPass] = DEFAULT_PASSES,
) -> NormalizationResult:
    """Compose the scale factor of every file over the ordered passes.

    Args:
        matrix: Peptide x file-position intensity matrix (linear scale)
        files: Spectra files, matching the matrix column positions
        passes: Ordered normalization passes

    Returns:
        NormalizationResult with one factor per file
    """
    factors = np.ones(len(files))
    method_log = []

    for norm_pass in passes:
        scaled = matrix * factors

        groups: dict[tuple, dict[tuple, list[int]]] = defaultdict(lambda: defaultdict(list))
        for col, f in enumerate(files):
            groups[norm_pass.group_key(f)][norm_pass.unit_key(f)].append(col)

        n_scaled = 0
        for group_key in sorted(groups):
            units = groups[group_key]
            if len(units) < 2:
                continue

            unit_keys = sorted(units)
            profiles = pd.DataFrame({
                i: _unit_profile(scaled, units[key], files)
                for i, key in enumerate(unit_keys)
            })
            shared = (profiles > 0).all(axis=1)
            if not shared.any():
                logger.warning(
                    f"No peptides shared by all units of {norm_pass.name} group {group_key}; "
                    f"skipping this group"
                )
                continue

            totals = profiles[shared].sum(axis=0)
            reference = totals.iloc[0]
            for i, key in enumerate(unit_keys):
                factor = reference / totals.iloc[i]
                for col in units[key]:
                    factors[col] *= factor
            n_scaled += 1

        if n_scaled:
            method_log.append(f"{norm_pass.name} normalization: scaled {n_scaled} group(s)")
            logger.debug(f"{norm_pass.name} normalization applied to {n_scaled} group(s)")

    return NormalizationResult(
        scale_factors={f: float(factors[i]) for i, f in enumerate(files)},
        method_log=method_log,
    )


def normalize_peaks(
    peaks: dict[SpectraFile, list[ChromatographicPeak]],
    passes: Sequence[NormalizationPass] = DEFAULT_PASSES,
) -> NormalizationResult:
    """Compute scale factors from MS/MS peaks and apply them to every peak in place."""
    files = list(peaks)
    matrix = peptide_intensity_matrix(peaks, files)
    result = compute_scale_factors(matrix, files, passes)

    for f, factor in result.scale_factors.items():
        if factor == 1.0:
            continue
        for peak in peaks[f]:
            peak.scale(factor)
    return result
