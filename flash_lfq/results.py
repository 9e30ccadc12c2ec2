"""Results store: peaks per file, peptide and protein-group tables, and export."""

from __future__ import annotations

import copy
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from .data_model import (
    DETECTION_PRIORITY,
    ChromatographicPeak,
    DetectionType,
    Identification,
    Peptide,
    ProteinGroup,
    SpectraFile,
)
from .isotopes import PROTON_MASS
from .rollup import ProteinQuantEstimator, quantify_proteins

logger = logging.getLogger(__name__)

OUTPUT_FILES = {
    'peaks': 'QuantifiedPeaks',
    'peptides': 'QuantifiedPeptides',
    'proteins': 'QuantifiedProteins',
}


def _join(values: Iterable[str]) -> str:
    return ';'.join(dict.fromkeys(v for v in values if v))


def _theoretical_mz(monoisotopic_mass: float, charge: int) -> float:
    if charge < 1:
        return np.nan
    return monoisotopic_mass / charge + PROTON_MASS


def _peak_detection_type(peak: ChromatographicPeak) -> DetectionType:
    if peak.is_ambiguous:
        return DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
    if peak.is_mbr_peak:
        return DetectionType.MBR
    if peak.intensity > 0:
        return DetectionType.MSMS
    return DetectionType.MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED


class FlashLfqResults:
    """Peaks, peptides and protein groups of one quantification run.

    ``protein_groups`` holds copies of the identifications' ProteinGroup
    records, so per-file intensities never leak onto caller objects.
    """

    def __init__(
        self,
        spectra_files: Sequence[SpectraFile],
        identifications: Iterable[Identification] = (),
    ):
        self.spectra_files: list[SpectraFile] = list(spectra_files)
        self.peaks: dict[SpectraFile, list[ChromatographicPeak]] = {f: [] for f in self.spectra_files}
        self.peptide_modified_sequences: dict[str, Peptide] = {}
        self.protein_groups: dict[str, ProteinGroup] = {}

        for ident in identifications:
            for pg in ident.protein_groups:
                if pg.accession not in self.protein_groups:
                    self.protein_groups[pg.accession] = ProteinGroup(pg.accession, pg.gene, pg.organism)
            groups = tuple(self.protein_groups[pg.accession] for pg in ident.protein_groups)
            pep = self.peptide_modified_sequences.get(ident.modified_sequence)
            if pep is None:
                self.peptide_modified_sequences[ident.modified_sequence] = Peptide(
                    ident.modified_sequence,
                    ident.base_sequence,
                    groups,
                    ident.use_for_protein_quant,
                )
                continue
            pep.protein_groups = tuple(dict.fromkeys(pep.protein_groups + groups))
            if not ident.use_for_protein_quant:
                pep.use_for_protein_quant = False

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def calculate_peptide_results(self) -> None:
        """Per-file peptide intensity (max non-ambiguous peak) and detection type."""
        for f in self.spectra_files:
            best_intensity: dict[str, float] = {}
            best_detection: dict[str, DetectionType] = {}
            for peak in self.peaks.get(f, []):
                detection = _peak_detection_type(peak)
                for seq in {i.modified_sequence for i in peak.identifications}:
                    stored = best_detection.get(seq, DetectionType.NOT_DETECTED)
                    if DETECTION_PRIORITY[detection] > DETECTION_PRIORITY[stored]:
                        best_detection[seq] = detection
                    if not peak.is_ambiguous:
                        best_intensity[seq] = max(best_intensity.get(seq, 0.0), peak.intensity)

            for seq, pep in self.peptide_modified_sequences.items():
                pep.set_intensity(f, best_intensity.get(seq, 0.0))
                pep.set_detection_type(f, best_detection.get(seq, DetectionType.NOT_DETECTED))

    def calculate_protein_results(
        self,
        estimator: ProteinQuantEstimator,
        use_shared_peptides: bool = False,
    ) -> None:
        quantify_proteins(
            self.peptide_modified_sequences,
            self.protein_groups,
            self.spectra_files,
            estimator,
            use_shared_peptides=use_shared_peptides,
        )

    def ambiguous_peak_counts(self) -> dict[SpectraFile, int]:
        """Number of ambiguous peaks per file (diagnostic)."""
        return {f: sum(1 for p in self.peaks.get(f, []) if p.is_ambiguous) for f in self.spectra_files}

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge_results_with(self, other: 'FlashLfqResults') -> None:
        """Absorb a result set computed on a disjoint set of files.

        Raises:
            ValueError: If the two result sets share a spectra file
        """
        overlap = set(self.spectra_files) & set(other.spectra_files)
        if overlap:
            names = ', '.join(sorted(str(f) for f in overlap))
            raise ValueError(f"Cannot merge results that share spectra files: {names}")

        self.spectra_files.extend(other.spectra_files)
        for f in other.spectra_files:
            self.peaks[f] = list(other.peaks.get(f, []))

        for accession, pg in other.protein_groups.items():
            mine = self.protein_groups.get(accession)
            if mine is None:
                self.protein_groups[accession] = copy.copy(pg)
                self.protein_groups[accession].intensities = dict(pg.intensities)
            else:
                mine.intensities.update(pg.intensities)

        for seq, pep in other.peptide_modified_sequences.items():
            groups = tuple(self.protein_groups[pg.accession] for pg in pep.protein_groups)
            mine = self.peptide_modified_sequences.get(seq)
            if mine is None:
                mine = Peptide(pep.sequence, pep.base_sequence, groups, pep.use_for_protein_quant)
                self.peptide_modified_sequences[seq] = mine
            else:
                mine.protein_groups = tuple(dict.fromkeys(mine.protein_groups + groups))
                mine.use_for_protein_quant = mine.use_for_protein_quant and pep.use_for_protein_quant
            mine.intensities.update(pep.intensities)
            mine.detection_types.update(pep.detection_types)

        logger.debug(f"Merged results; now holding {len(self.spectra_files)} files")

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def file_labels(self) -> dict[SpectraFile, str]:
        """Column label per file; design labels are used where stems collide."""
        stems = Counter(f.filename_without_extension for f in self.spectra_files)
        return {
            f: f.design_label if stems[f.filename_without_extension] > 1 else f.filename_without_extension
            for f in self.spectra_files
        }

    def peaks_table(self) -> pd.DataFrame:
        rows = []
        for f in self.spectra_files:
            for peak in self.peaks.get(f, []):
                ident = peak.identifications[0]
                charge = peak.apex.charge_state if peak.apex is not None else ident.precursor_charge
                rows.append({
                    'File Name': f.filename_without_extension,
                    'Base Sequence': _join(i.base_sequence for i in peak.identifications),
                    'Full Sequence': _join(i.modified_sequence for i in peak.identifications),
                    'Protein Group': _join(pg.accession for i in peak.identifications for pg in i.protein_groups),
                    'Peptide Monoisotopic Mass': ident.monoisotopic_mass,
                    'MS2 Retention Time': np.nan if peak.is_mbr_peak else ident.ms2_retention_time,
                    'Precursor Charge': ident.precursor_charge,
                    'Theoretical MZ': _theoretical_mz(ident.monoisotopic_mass, charge),
                    'Peak intensity': peak.intensity,
                    'Peak RT Start': peak.rt_start,
                    'Peak RT Apex': peak.apex_retention_time,
                    'Peak RT End': peak.rt_end,
                    'Peak MZ': peak.apex.indexed_peak.mz if peak.apex is not None else np.nan,
                    'Peak Charge': peak.apex.charge_state if peak.apex is not None else np.nan,
                    'Num Charge States Observed': peak.num_charge_states_observed,
                    'Peak Detection Type': str(_peak_detection_type(peak)),
                    'MBR Predicted RT': peak.predicted_rt if peak.predicted_rt is not None else np.nan,
                    'PSMs Mapped': len(peak.identifications),
                    'Base Sequences Mapped': peak.num_identifications_by_base_seq,
                    'Full Sequences Mapped': peak.num_identifications_by_full_seq,
                    'Peak Split Valley RT': peak.split_rt if peak.split_rt is not None else np.nan,
                    'Peak Apex Mass Error (ppm)': peak.mass_error_ppm,
                })
        return pd.DataFrame(rows)

    def peptides_table(self) -> pd.DataFrame:
        labels = self.file_labels()
        rows = []
        for seq in sorted(self.peptide_modified_sequences):
            pep = self.peptide_modified_sequences[seq]
            row = {
                'Sequence': pep.sequence,
                'Base Sequence': pep.base_sequence,
                'Protein Groups': _join(pg.accession for pg in pep.protein_groups),
                'Gene Names': _join(pg.gene for pg in pep.protein_groups),
                'Organism': _join(pg.organism for pg in pep.protein_groups),
            }
            for f in self.spectra_files:
                row[f"Intensity_{labels[f]}"] = pep.get_intensity(f)
            for f in self.spectra_files:
                row[f"Detection Type_{labels[f]}"] = str(pep.get_detection_type(f))
            rows.append(row)
        return pd.DataFrame(rows)

    def proteins_table(self) -> pd.DataFrame:
        labels = self.file_labels()
        rows = []
        for accession in sorted(self.protein_groups):
            pg = self.protein_groups[accession]
            row = {
                'Protein Groups': pg.accession,
                'Gene Name': pg.gene,
                'Organism': pg.organism,
            }
            for f in self.spectra_files:
                row[f"Intensity_{labels[f]}"] = pg.get_intensity(f)
            rows.append(row)
        return pd.DataFrame(rows)

    def write_results(
        self,
        output_dir,
        output_format: str = 'tsv',
        prefix: Optional[str] = None,
    ) -> dict[str, Path]:
        """Write the three result tables.

        Args:
            output_dir: Directory to write into (created if missing)
            output_format: 'tsv' or 'parquet'
            prefix: Optional file name prefix

        Returns:
            Mapping of table name to written path
        """
        if output_format not in ('tsv', 'parquet'):
            raise ValueError(f"Unknown output format: {output_format}. Use 'tsv' or 'parquet'")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        tables = {
            'peaks': self.peaks_table(),
            'peptides': self.peptides_table(),
            'proteins': self.proteins_table(),
        }

        written = {}
        for name, df in tables.items():
            stem = f"{prefix}_{OUTPUT_FILES[name]}" if prefix else OUTPUT_FILES[name]
            if output_format == 'parquet':
                path = output_dir / f"{stem}.parquet"
                df.to_parquet(path, compression="zstd", index=False)
            else:
                path = output_dir / f"{stem}.tsv"
                df.to_csv(path, sep='\t', index=False)
            written[name] = path
            logger.info(f"Wrote {len(df)} rows to {path}")
        return written
