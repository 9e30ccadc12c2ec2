"""Isotopic envelope detection in a single scan."""

from __future__ import annotations

from typing import Optional

import numpy as np

from .data_model import IsotopicEnvelope
from .isotopes import IsotopeDistribution
from .spectral_index import SpectralIndex


class EnvelopeDetector:
    """Match a theoretical isotope distribution against one scan.

    Each isotope peak is looked up independently within ``ppm_tolerance``. The
    monoisotopic peak is mandatory. Each matched isotope estimates the whole
    envelope as observed / theoretical abundance; those estimates are averaged
    with the theoretical abundances as weights, which reduces to

        intensity = sum(observed) / sum(theoretical abundance of matched peaks)

    so a missing minor isotope does not bias the estimate.
    """

    def __init__(
        self,
        index: SpectralIndex,
        ppm_tolerance: float,
        num_isotopes_required: int = 2,
    ):
        self.index = index
        self.ppm_tolerance = ppm_tolerance
        self.num_isotopes_required = num_isotopes_required

    def find_envelope(
        self,
        distribution: IsotopeDistribution,
        monoisotopic_mass: float,
        charge: int,
        scan_index: int,
    ) -> Optional[IsotopicEnvelope]:
        mzs = distribution.mz_values(monoisotopic_mass, charge)

        mono = self.index.get_peak(mzs[0], scan_index, self.ppm_tolerance)
        if mono is None:
            return None

        observed = [mono.intensity]
        matched_abundance = [distribution.abundances[0]]
        for mz, abundance in zip(mzs[1:], distribution.abundances[1:]):
            peak = self.index.get_peak(mz, scan_index, self.ppm_tolerance)
            if peak is not None:
                observed.append(peak.intensity)
                matched_abundance.append(abundance)

        required = min(self.num_isotopes_required, len(distribution))
        if len(observed) < required:
            return None

        intensity = float(np.sum(observed) / np.sum(matched_abundance))
        return IsotopicEnvelope(mono, charge, intensity)
