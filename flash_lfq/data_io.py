"""Data I/O: MS1 scans from mzML, identification tables and experimental designs."""

import logging
import re
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from pyteomics import mzml

from .data_model import Identification, ProteinGroup, SpectraFile
from .spectral_index import Ms1Scan

logger = logging.getLogger(__name__)

SPECTRA_EXTENSIONS = ['.mzML', '.mzml']

# Identification table columns (tab-separated)
IDENTIFICATION_COLUMNS = {
    'File Name': 'file_name',
    'Base Sequence': 'base_sequence',
    'Full Sequence': 'modified_sequence',
    'Peptide Monoisotopic Mass': 'monoisotopic_mass',
    'Scan Retention Time': 'ms2_retention_time',
    'Precursor Charge': 'precursor_charge',
    'Protein Accession': 'protein_accession',
}
OPTIONAL_IDENTIFICATION_COLUMNS = {
    'Gene Name': 'gene',
    'Organism Name': 'organism',
    'Chemical Formula': 'chemical_formula',
    'Use For Alignment': 'use_for_alignment',
    'Use For Protein Quant': 'use_for_protein_quant',
}

DESIGN_COLUMNS = ['FileName', 'Condition', 'Biorep', 'Fraction', 'Techrep']

ACCESSION_SEPARATORS = r'[|;]'


def _retention_time_minutes(spectrum: dict) -> float:
    scan = spectrum['scanList']['scan'][0]
    rt = scan['scan start time']
    unit = getattr(rt, 'unit_info', 'minute')
    value = float(rt)
    return value / 60.0 if unit == 'second' else value


def load_ms1_scans(spectra_file: SpectraFile) -> list[Ms1Scan]:
    """Read the MS1 scans of one mzML file.

    Args:
        spectra_file: File to read; ``full_path`` must point at an mzML file

    Returns:
        MS1 scans with retention times in minutes

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(spectra_file.full_path)
    if not path.exists():
        raise FileNotFoundError(f"Spectra file not found: {path}")

    scans = []
    with mzml.MzML(str(path)) as reader:
        for spectrum in reader:
            if spectrum.get('ms level') != 1:
                continue
            scans.append(Ms1Scan(
                retention_time=_retention_time_minutes(spectrum),
                mz_array=np.asarray(spectrum['m/z array'], dtype=float),
                intensity_array=np.asarray(spectrum['intensity array'], dtype=float),
                scan_number=int(spectrum.get('index', len(scans))) + 1,
                metadata={'id': spectrum.get('id', '')},
            ))

    logger.debug(f"Read {len(scans)} MS1 scans from {path.name}")
    return scans


def _resolve_spectra_path(spectra_dir: Path, file_name: str) -> Path:
    candidate = spectra_dir / file_name
    if candidate.suffix in SPECTRA_EXTENSIONS and candidate.exists():
        return candidate
    for ext in SPECTRA_EXTENSIONS:
        with_ext = spectra_dir / f"{file_name}{ext}"
        if with_ext.exists():
            return with_ext
    logger.warning(f"No spectra file found for '{file_name}' in {spectra_dir}")
    return spectra_dir / f"{Path(file_name).stem}.mzML"


def load_experimental_design(filepath: Path, spectra_dir: Optional[Path] = None) -> list[SpectraFile]:
    """Load an experimental design table.

    Args:
        filepath: Tab-separated file with FileName, Condition, Biorep,
            Fraction and Techrep columns
        spectra_dir: Directory holding the spectra files (defaults to the
            design file's directory)

    Returns:
        One SpectraFile per row, in file order

    Raises:
        ValueError: If required columns are missing or a file is listed twice
    """
    filepath = Path(filepath)
    spectra_dir = Path(spectra_dir) if spectra_dir is not None else filepath.parent

    df = pd.read_csv(filepath, sep='\t', dtype={'FileName': str, 'Condition': str})
    missing = [c for c in DESIGN_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Experimental design {filepath.name} is missing columns: {missing}")

    duplicated = df['FileName'][df['FileName'].duplicated()].tolist()
    if duplicated:
        raise ValueError(f"Files listed more than once in experimental design: {duplicated}")

    files = [
        SpectraFile(
            str(_resolve_spectra_path(spectra_dir, row.FileName)),
            condition=str(row.Condition),
            biological_replicate=int(row.Biorep),
            technical_replicate=int(row.Techrep),
            fraction=int(row.Fraction),
        )
        for row in df.itertuples(index=False)
    ]
    logger.info(f"Loaded experimental design with {len(files)} files "
                f"in {df['Condition'].nunique()} conditions")
    return files


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 't')
    if pd.isna(value):
        return True
    return bool(value)


def load_identifications(filepath: Path, spectra_files: list[SpectraFile]) -> list[Identification]:
    """Load a tab-separated identification table.

    Rows are matched to spectra files by file name without extension. Protein
    accessions separated by '|' or ';' become separate protein groups; gene
    and organism fields are split the same way when they line up.

    Args:
        filepath: Identification table
        spectra_files: Files from the experimental design

    Returns:
        Identifications in table order

    Raises:
        ValueError: If required columns are missing or a row names a file not
            in the experimental design
    """
    filepath = Path(filepath)
    df = pd.read_csv(filepath, sep='\t', dtype={'Protein Accession': str, 'File Name': str})

    missing = [c for c in IDENTIFICATION_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Identification file {filepath.name} is missing columns: {missing}")

    rename = {k: v for k, v in {**IDENTIFICATION_COLUMNS, **OPTIONAL_IDENTIFICATION_COLUMNS}.items()
              if k in df.columns}
    df = df.rename(columns=rename)

    by_stem = {f.filename_without_extension: f for f in spectra_files}
    unknown = sorted({Path(n).stem for n in df['file_name']} - set(by_stem))
    if unknown:
        raise ValueError(f"Identifications reference files not in the experimental design: {unknown}")

    protein_groups: dict[str, ProteinGroup] = {}

    def groups_for(row) -> tuple:
        if not isinstance(row.protein_accession, str):
            return ()
        accessions = re.split(ACCESSION_SEPARATORS, row.protein_accession)
        genes = _split_parallel(getattr(row, 'gene', ''), len(accessions))
        organisms = _split_parallel(getattr(row, 'organism', ''), len(accessions))
        groups = []
        for acc, gene, organism in zip(accessions, genes, organisms):
            acc = acc.strip()
            if not acc:
                continue
            if acc not in protein_groups:
                protein_groups[acc] = ProteinGroup(acc, gene, organism)
            groups.append(protein_groups[acc])
        return tuple(groups)

    identifications = []
    for row in df.itertuples(index=False):
        formula = getattr(row, 'chemical_formula', None)
        identifications.append(Identification(
            spectra_file=by_stem[Path(row.file_name).stem],
            base_sequence=str(row.base_sequence),
            modified_sequence=str(row.modified_sequence),
            monoisotopic_mass=float(row.monoisotopic_mass),
            ms2_retention_time=float(row.ms2_retention_time),
            precursor_charge=int(row.precursor_charge),
            protein_groups=groups_for(row),
            optional_chemical_formula=formula if isinstance(formula, str) and formula else None,
            use_for_protein_quant=_as_bool(getattr(row, 'use_for_protein_quant', True)),
            use_for_alignment=_as_bool(getattr(row, 'use_for_alignment', True)),
        ))

    logger.info(f"Loaded {len(identifications)} identifications "
                f"({df['modified_sequence'].nunique()} sequences, {len(protein_groups)} protein groups)")
    return identifications


def _split_parallel(value, n: int) -> list[str]:
    """Split a gene/organism field so it lines up with n accessions."""
    if not isinstance(value, str) or not value:
        return [''] * n
    parts = [p.strip() for p in re.split(ACCESSION_SEPARATORS, value)]
    if len(parts) == n:
        return parts
    return [value.strip()] * n
