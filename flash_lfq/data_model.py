"""Core records shared by every stage of the quantification engine.

SpectraFile, ProteinGroup, Identification and IndexedPeak are value records.
IsotopicEnvelope and ChromatographicPeak are built by the peak builder and
only touched afterwards by normalization (scale multiply) and peak merging.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from .isotopes import PROTON_MASS


@dataclass(frozen=True)
class SpectraFile:
    """One LC-MS run and its place in the experimental design.

    Value-equal on (path, condition, biorep, techrep, fraction) so it can key
    dictionaries across independently produced result sets.
    """

    full_path: str
    condition: str = ''
    biological_replicate: int = 0
    technical_replicate: int = 0
    fraction: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'full_path', str(Path(self.full_path).resolve()))

    @property
    def filename_without_extension(self) -> str:
        return Path(self.full_path).stem

    @property
    def design_label(self) -> str:
        return (f"{self.filename_without_extension}_{self.condition}"
                f"_b{self.biological_replicate}_t{self.technical_replicate}"
                f"_f{self.fraction}")

    def __str__(self) -> str:
        return self.filename_without_extension


@dataclass(eq=False)
class ProteinGroup:
    """A protein group, value-equal by accession.

    ``intensities`` is only populated on the copies owned by a results store.
    """

    accession: str
    gene: str = ''
    organism: str = ''
    intensities: dict = field(default_factory=dict, repr=False)

    def __eq__(self, other):
        return isinstance(other, ProteinGroup) and self.accession == other.accession

    def __hash__(self):
        return hash(self.accession)

    def get_intensity(self, spectra_file: SpectraFile) -> float:
        return self.intensities.get(spectra_file, 0.0)

    def set_intensity(self, spectra_file: SpectraFile, intensity: float) -> None:
        self.intensities[spectra_file] = intensity

    def __str__(self) -> str:
        return self.accession


@dataclass(eq=False)
class Identification:
    """An upstream peptide identification (read-only to the engine)."""

    spectra_file: SpectraFile
    base_sequence: str
    modified_sequence: str
    monoisotopic_mass: float
    ms2_retention_time: float
    precursor_charge: int
    protein_groups: tuple = ()
    optional_chemical_formula: Optional[str] = None
    use_for_protein_quant: bool = True
    use_for_alignment: bool = True

    def __post_init__(self):
        self.protein_groups = tuple(dict.fromkeys(self.protein_groups))

    def __str__(self) -> str:
        return f"{self.spectra_file}|{self.modified_sequence}|+{self.precursor_charge}|{self.ms2_retention_time:.3f}"


@dataclass(frozen=True)
class IndexedPeak:
    """One observed MS1 centroid."""

    mz: float
    intensity: float
    zero_based_scan_index: int
    retention_time: float

    def __str__(self) -> str:
        return f"{self.mz:.3f}; {self.zero_based_scan_index}"


class IsotopicEnvelope:
    """Isotope peaks of one species at one charge in one scan.

    ``indexed_peak`` is the monoisotopic peak. Equality uses the reference
    peak, the charge and the rounded intensity.
    """

    __slots__ = ('indexed_peak', 'charge_state', 'intensity')

    def __init__(self, indexed_peak: IndexedPeak, charge_state: int, intensity: float):
        self.indexed_peak = indexed_peak
        self.charge_state = charge_state
        self.intensity = intensity

    @property
    def retention_time(self) -> float:
        return self.indexed_peak.retention_time

    @property
    def scan_index(self) -> int:
        return self.indexed_peak.zero_based_scan_index

    def _key(self):
        return (self.indexed_peak, self.charge_state, round(self.intensity))

    def __eq__(self, other):
        if not isinstance(other, IsotopicEnvelope):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self) -> str:
        return f"IsotopicEnvelope({self})"

    def __str__(self) -> str:
        return (f"+{self.charge_state}|{round(self.intensity)}"
                f"|{self.indexed_peak.retention_time:.3f}|{self.indexed_peak.zero_based_scan_index}")


class DetectionType(enum.Enum):
    NOT_DETECTED = 'NotDetected'
    MSMS = 'MSMS'
    MBR = 'MBR'
    MSMS_AMBIGUOUS_PEAKFINDING = 'MSMSAmbiguousPeakfinding'
    MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED = 'MSMSIdentifiedButNotQuantified'
    IMPUTED = 'Imputed'

    def __str__(self) -> str:
        return self.value


# Higher wins when two peaks report the same peptide in one file
DETECTION_PRIORITY = {
    DetectionType.NOT_DETECTED: 0,
    DetectionType.IMPUTED: 1,
    DetectionType.MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED: 2,
    DetectionType.MSMS_AMBIGUOUS_PEAKFINDING: 3,
    DetectionType.MBR: 4,
    DetectionType.MSMS: 5,
}


class ChromatographicPeak:
    """An elution peak: an RT-ordered trace of envelopes in one file.

    A peak with no envelopes is a legitimate "not detected" outcome with
    intensity 0 and no apex. A peak claimed by more than one full sequence is
    ambiguous; it is reported but never feeds peptide or protein intensity.
    """

    def __init__(
        self,
        identification: Identification,
        is_mbr_peak: bool,
        spectra_file: SpectraFile,
    ):
        self.spectra_file = spectra_file
        self.identifications: list[Identification] = [identification]
        self.is_mbr_peak = is_mbr_peak
        self.isotopic_envelopes: list[IsotopicEnvelope] = []
        self.apex: Optional[IsotopicEnvelope] = None
        self.intensity = 0.0
        self.split_rt: Optional[float] = None
        self.mass_error_ppm = np.nan
        self.num_charge_states_observed = 0
        self.predicted_rt: Optional[float] = None
        self.num_identifications_by_base_seq = 1
        self.num_identifications_by_full_seq = 1

    @property
    def is_ambiguous(self) -> bool:
        return self.num_identifications_by_full_seq > 1

    @property
    def apex_retention_time(self) -> float:
        return self.apex.retention_time if self.apex is not None else np.nan

    @property
    def rt_start(self) -> float:
        if not self.isotopic_envelopes:
            return np.nan
        return self.isotopic_envelopes[0].retention_time

    @property
    def rt_end(self) -> float:
        if not self.isotopic_envelopes:
            return np.nan
        return self.isotopic_envelopes[-1].retention_time

    def set_envelopes(self, envelopes) -> None:
        """Replace the trace, keeping one envelope per scan (the most intense)."""
        by_scan: dict[int, IsotopicEnvelope] = {}
        for env in envelopes:
            kept = by_scan.get(env.scan_index)
            if kept is None or env.intensity > kept.intensity:
                by_scan[env.scan_index] = env
        self.isotopic_envelopes = [by_scan[s] for s in sorted(by_scan)]

    def calculate_intensity(self, integrate: bool = False) -> None:
        if not self.isotopic_envelopes:
            self.apex = None
            self.intensity = 0.0
            self.num_charge_states_observed = 0
            return

        self.apex = max(self.isotopic_envelopes, key=lambda e: (e.intensity, -e.scan_index))
        if integrate:
            self.intensity = float(sum(e.intensity for e in self.isotopic_envelopes))
        else:
            self.intensity = float(self.apex.intensity)
        self.num_charge_states_observed = len({e.charge_state for e in self.isotopic_envelopes})

        ident = self.identifications[0]
        theoretical_mz = ident.monoisotopic_mass / self.apex.charge_state + PROTON_MASS
        self.mass_error_ppm = (self.apex.indexed_peak.mz - theoretical_mz) / theoretical_mz * 1e6

    def resolve_identifications(self) -> None:
        self.num_identifications_by_base_seq = len({i.base_sequence for i in self.identifications})
        self.num_identifications_by_full_seq = len({i.modified_sequence for i in self.identifications})

    def merge_with(self, other: 'ChromatographicPeak', integrate: bool = False) -> None:
        """Absorb another peak's envelopes and identifications."""
        for ident in other.identifications:
            if ident not in self.identifications:
                self.identifications.append(ident)
        self.set_envelopes(self.isotopic_envelopes + other.isotopic_envelopes)
        if self.split_rt is None:
            self.split_rt = other.split_rt
        self.calculate_intensity(integrate)
        self.resolve_identifications()

    def scale(self, factor: float) -> None:
        for env in self.isotopic_envelopes:
            env.intensity *= factor
        self.intensity *= factor

    def __str__(self) -> str:
        ident = self.identifications[0]
        return (f"{self.spectra_file}\t{ident.modified_sequence}\t{self.intensity:.1f}"
                f"\t{self.apex_retention_time:.3f}\t{'MBR' if self.is_mbr_peak else 'MSMS'}")


class Peptide:
    """Per-file intensities and detection types for one modified sequence."""

    def __init__(self, sequence: str, base_sequence: str = '', protein_groups=(),
                 use_for_protein_quant: bool = True):
        self.sequence = sequence
        self.base_sequence = base_sequence or sequence
        self.protein_groups: tuple = tuple(protein_groups)
        self.use_for_protein_quant = use_for_protein_quant
        self.intensities: dict[SpectraFile, float] = {}
        self.detection_types: dict[SpectraFile, DetectionType] = {}

    def get_intensity(self, spectra_file: SpectraFile) -> float:
        return self.intensities.get(spectra_file, 0.0)

    def set_intensity(self, spectra_file: SpectraFile, intensity: float) -> None:
        self.intensities[spectra_file] = intensity

    def get_detection_type(self, spectra_file: SpectraFile) -> DetectionType:
        return self.detection_types.get(spectra_file, DetectionType.NOT_DETECTED)

    def set_detection_type(self, spectra_file: SpectraFile, detection: DetectionType) -> None:
        self.detection_types[spectra_file] = detection

    def __str__(self) -> str:
        return self.sequence

