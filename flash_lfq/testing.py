"""Synthetic MS1 data for tests and demos.

Scans are generated from the same averagine isotope distributions the engine
uses, so an envelope built from ``amount`` is measured back as ``amount``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional

import numpy as np

from .data_model import Identification, ProteinGroup, SpectraFile
from .isotopes import averagine_distribution
from .spectral_index import Ms1Scan

logger = logging.getLogger(__name__)

# Monoisotopic masses of the peptides used throughout the test suite
PEPTIDE_MASSES = {
    'PEPTIDE': 799.35996,
    'PEPTIDEV': 898.42837,
    'PEPTIDEVV': 997.49678,
    'PEPTIDEVVV': 1096.56520,
    'PEPTIDEVVVV': 1195.63361,
    'MYPEPTIDE': 1093.46377,
    'VVVVVPEPTIDE': 1294.70203,
    'EGFQVADGPLYR': 1350.65681,
}


def envelope_peaks(monoisotopic_mass: float, amount: float, charge: int = 1) -> tuple[np.ndarray, np.ndarray]:
    """Centroids (m/z, intensity) of one isotopic envelope carrying ``amount``."""
    dist = averagine_distribution(monoisotopic_mass)
    return dist.mz_values(monoisotopic_mass, charge), dist.abundances * amount


def make_scan(
    retention_time: float,
    species: Iterable[tuple[float, float, int]] = (),
    scan_number: Optional[int] = None,
) -> Ms1Scan:
    """One MS1 scan containing envelopes of (mass, amount, charge) species."""
    mz_parts, int_parts = [np.zeros(0)], [np.zeros(0)]
    for mass, amount, charge in species:
        if amount <= 0:
            continue
        mz, intensity = envelope_peaks(mass, amount, charge)
        mz_parts.append(mz)
        int_parts.append(intensity)
    mz = np.concatenate(mz_parts)
    intensity = np.concatenate(int_parts)
    order = np.argsort(mz)
    return Ms1Scan(retention_time, mz[order], intensity[order], scan_number=scan_number)


def trace_scans(
    monoisotopic_mass: float,
    multipliers: Sequence[Optional[float]],
    amount: float = 1e6,
    rt_start: float = 1.0,
    rt_step: float = 0.1,
    charge: int = 1,
) -> list[Ms1Scan]:
    """Scans of one species whose amount follows ``multipliers``.

    A multiplier of None (or 0) produces a scan without the species.
    """
    scans = []
    for s, multiplier in enumerate(multipliers):
        species = [] if not multiplier else [(monoisotopic_mass, amount * multiplier, charge)]
        scans.append(make_scan(rt_start + s * rt_step, species, scan_number=s + 1))
    return scans


def one_peptide_per_scan(
    sequences: Sequence[str],
    retention_times: Sequence[float],
    amounts: Sequence[float] | float = 1e6,
    charge: int = 1,
) -> list[Ms1Scan]:
    """One scan per peptide, each scan holding only that peptide."""
    if np.isscalar(amounts):
        amounts = [amounts] * len(sequences)
    return [
        make_scan(rt, [(PEPTIDE_MASSES[seq], amount, charge)], scan_number=i + 1)
        for i, (seq, rt, amount) in enumerate(zip(sequences, retention_times, amounts))
    ]


def gaussian_multipliers(n_scans: int, apex_scan: float, width: float) -> list[float]:
    s = np.arange(n_scans)
    return list(np.exp(-0.5 * ((s - apex_scan) / width) ** 2))


def make_identification(
    spectra_file: SpectraFile,
    sequence: str,
    retention_time: float,
    charge: int = 1,
    protein_groups: Sequence[ProteinGroup] = (),
    base_sequence: Optional[str] = None,
    use_for_protein_quant: bool = True,
) -> Identification:
    return Identification(
        spectra_file=spectra_file,
        base_sequence=base_sequence if base_sequence is not None else sequence,
        modified_sequence=sequence,
        monoisotopic_mass=PEPTIDE_MASSES[sequence],
        ms2_retention_time=retention_time,
        precursor_charge=charge,
        protein_groups=tuple(protein_groups),
        use_for_protein_quant=use_for_protein_quant,
    )


class InMemoryScanLoader:
    """Scan loader serving pre-built scans by file path.

    Several SpectraFile records may point at the same path (same run, different
    design labels); they all receive the same scans.
    """

    def __init__(self, scans_by_path: Optional[dict] = None):
        self._scans: dict[str, list[Ms1Scan]] = {}
        for path, scans in (scans_by_path or {}).items():
            self.add(path, scans)
        self.calls: list[SpectraFile] = []

    def add(self, path, scans: Sequence[Ms1Scan]) -> None:
        self._scans[str(Path(path).resolve())] = list(scans)

    def __call__(self, spectra_file: SpectraFile) -> list[Ms1Scan]:
        self.calls.append(spectra_file)
        try:
            return self._scans[spectra_file.full_path]
        except KeyError:
            raise FileNotFoundError(f"No scans registered for {spectra_file.full_path}") from None
