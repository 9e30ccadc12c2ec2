"""
Theoretical isotope distributions.

The engine consumes isotope distributions; it does not compute them from a
chemical formula. A formula-based provider can be plugged in as any callable
``formula -> [(mass, relative_abundance), ...]``. Identifications without a
formula (or runs without a provider) fall back to an averagine estimate:

    P(M+k) ~ Poisson(k; lambda),  lambda = mass * sum_e(n_e / m_avg * p_e)

where n_e is the averagine count of element e per averagine unit of mass
m_avg and p_e the natural abundance of its +1 Da isotope.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import poisson

logger = logging.getLogger(__name__)

PROTON_MASS = 1.007276466812
C13_C12_MASS_DIFFERENCE = 1.0033548378

# Senko averagine: atoms per averagine unit and the unit's mass
AVERAGINE_MASS = 111.1254
AVERAGINE_COMPOSITION = {
    'C': 4.9384,
    'H': 7.7583,
    'N': 1.3577,
    'O': 1.4773,
    'S': 0.0417,
}
# Abundance of the +1 Da isotope (13C, 2H, 15N, 17O, 33S)
HEAVY_ISOTOPE_ABUNDANCE = {
    'C': 0.0107,
    'H': 0.000115,
    'N': 0.00364,
    'O': 0.00038,
    'S': 0.0075,
}

MAX_ISOTOPE_PEAKS = 10
MIN_RELATIVE_ABUNDANCE = 0.05

IsotopeProvider = Callable[[str], Sequence[tuple[float, float]]]

AVERAGINE_LAMBDA_PER_DALTON = sum(
    count / AVERAGINE_MASS * HEAVY_ISOTOPE_ABUNDANCE[element]
    for element, count in AVERAGINE_COMPOSITION.items()
)


@dataclass(frozen=True)
class IsotopeDistribution:
    """Isotope peaks relative to the monoisotopic mass.

    ``mass_shifts[0]`` is always 0 (the monoisotopic peak). ``abundances`` sum
    to 1 over the retained peaks.
    """
    mass_shifts: np.ndarray
    abundances: np.ndarray

    def __len__(self) -> int:
        return len(self.mass_shifts)

    def mz_values(self, monoisotopic_mass: float, charge: int) -> np.ndarray:
        return (monoisotopic_mass + self.mass_shifts) / charge + PROTON_MASS


def _trim(abundances: np.ndarray, min_relative_abundance: float) -> np.ndarray:
    """Indices of isotopes kept: the monoisotope plus any peak above the cutoff."""
    relative = abundances / abundances.max()
    keep = np.flatnonzero(relative >= min_relative_abundance)
    return np.union1d([0], keep)


def averagine_distribution(
    monoisotopic_mass: float,
    max_peaks: int = MAX_ISOTOPE_PEAKS,
    min_relative_abundance: float = MIN_RELATIVE_ABUNDANCE,
) -> IsotopeDistribution:
    """Estimate the isotope envelope of a peptide from its mass alone.

    Args:
        monoisotopic_mass: Neutral monoisotopic mass in Da
        max_peaks: Maximum number of isotope peaks to consider
        min_relative_abundance: Peaks below this fraction of the most abundant
            isotope are dropped (the monoisotope is always kept)

    Returns:
        IsotopeDistribution with abundances normalized to sum to 1
    """
    if not np.isfinite(monoisotopic_mass) or monoisotopic_mass <= 0:
        return IsotopeDistribution(np.zeros(1), np.ones(1))

    lam = AVERAGINE_LAMBDA_PER_DALTON * monoisotopic_mass
    k = np.arange(max_peaks)
    pmf = poisson.pmf(k, lam)

    kept = _trim(pmf, min_relative_abundance)
    abundances = pmf[kept]
    return IsotopeDistribution(
        mass_shifts=kept * C13_C12_MASS_DIFFERENCE,
        abundances=abundances / abundances.sum(),
    )


def distribution_from_peaks(
    peaks: Iterable[tuple[float, float]],
    min_relative_abundance: float = MIN_RELATIVE_ABUNDANCE,
) -> IsotopeDistribution:
    """Convert provider output (absolute mass, abundance) pairs."""
    arr = np.asarray(sorted(peaks), dtype=float)
    if arr.size == 0:
        raise ValueError("Isotope provider returned no peaks")
    masses, abundances = arr[:, 0], arr[:, 1]
    kept = _trim(abundances, min_relative_abundance)
    abundances = abundances[kept]
    return IsotopeDistribution(
        mass_shifts=masses[kept] - masses[0],
        abundances=abundances / abundances.sum(),
    )


class IsotopeDistributionCache:
    """Distributions keyed by chemical formula or rounded mass.

    Populated once by the coordinating thread; worker threads only read.
    """

    def __init__(self, provider: Optional[IsotopeProvider] = None):
        self.provider = provider
        self._cache: dict = {}

    @staticmethod
    def key_for(monoisotopic_mass: float, formula: Optional[str] = None):
        if formula:
            return ('formula', formula)
        return ('mass', round(float(monoisotopic_mass), 4))

    def populate(self, entries: Iterable[tuple[float, Optional[str]]]) -> None:
        for mass, formula in entries:
            key = self.key_for(mass, formula if self.provider else None)
            if key in self._cache:
                continue
            if key[0] == 'formula':
                self._cache[key] = distribution_from_peaks(self.provider(formula))
            else:
                self._cache[key] = averagine_distribution(mass)
        logger.debug(f"Isotope cache holds {len(self._cache)} distributions")

    def get(self, monoisotopic_mass: float, formula: Optional[str] = None) -> IsotopeDistribution:
        key = self.key_for(monoisotopic_mass, formula if self.provider else None)
        dist = self._cache.get(key)
        if dist is None:
            # not pre-populated; compute without storing so readers never mutate
            if key[0] == 'formula':
                return distribution_from_peaks(self.provider(formula))
            return averagine_distribution(monoisotopic_mass)
        return dist

    def __len__(self) -> int:
        return len(self._cache)
