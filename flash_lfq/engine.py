"""
Quantification engine: orchestrates peak finding, match-between-runs,
normalization and protein rollup over a set of identifications.

Phases:
1. Isotope distributions for every identification are computed up front
   (the cache is read-only afterwards).
2. Each spectra file is loaded, indexed and peak-picked independently on a
   thread pool. A failure in any file aborts the run.
3. After all files finish, the coordinating thread runs retention time
   alignment, match-between-runs, normalization, and peptide and protein
   aggregation.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, fields, replace
from typing import Optional

from .alignment import RetentionTimeAligner
from .data_io import load_ms1_scans
from .data_model import ChromatographicPeak, Identification, SpectraFile
from .isotopes import IsotopeDistributionCache, IsotopeProvider
from .mbr import MatchBetweenRunsResolver
from .normalization import normalize_peaks
from .peak_builder import PeakBuilder, PeakBuilderParams
from .results import FlashLfqResults
from .rollup import MedianPolishWeightedEstimator, ProteinQuantEstimator, TopNEstimator
from .spectral_index import Ms1Scan, SpectralIndex

logger = logging.getLogger(__name__)

ScanLoader = Callable[[SpectraFile], Sequence[Ms1Scan]]


@dataclass
class EngineConfig:
    """Every tunable constant of a quantification run."""

    # Peak finding
    ppm_tolerance: float = 10.0
    num_isotopes_required: int = 2
    missed_scans_allowed: int = 2
    peak_split_discrimination_factor: float = 0.6
    min_envelopes_to_split: int = 5
    peak_merge_rt_window: float = 0.05  # minutes
    integrate: bool = False

    # Match-between-runs
    match_between_runs: bool = False
    mbr_rt_window: float = 1.0  # minutes, half-width around the projected RT
    mbr_ppm_tolerance: float = 10.0
    mbr_min_anchor_peptides: int = 1
    mbr_local_alignment_window: Optional[float] = None  # None = one global offset per file pair
    require_msms_id_in_condition: bool = False

    # Normalization
    normalize: bool = False

    # Protein quantification
    advanced_protein_quant: bool = False
    top_n: int = 3
    top_n_aggregation: str = 'sum'
    use_shared_peptides: bool = False

    # Execution
    max_threads: int = -1  # -1 = all cores
    silent: bool = False

    def validate(self) -> None:
        """Raise ValueError on settings that cannot produce a valid run."""
        for name in ('ppm_tolerance', 'mbr_ppm_tolerance', 'peak_merge_rt_window', 'mbr_rt_window'):
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if not 0 < self.peak_split_discrimination_factor < 1:
            raise ValueError(
                f"peak_split_discrimination_factor must be in (0, 1), "
                f"got {self.peak_split_discrimination_factor}"
            )
        if self.num_isotopes_required < 1:
            raise ValueError(f"num_isotopes_required must be at least 1, got {self.num_isotopes_required}")
        if self.missed_scans_allowed < 0:
            raise ValueError(f"missed_scans_allowed must be non-negative, got {self.missed_scans_allowed}")
        if self.min_envelopes_to_split < 3:
            raise ValueError(f"min_envelopes_to_split must be at least 3, got {self.min_envelopes_to_split}")
        if self.max_threads == 0 or self.max_threads < -1:
            raise ValueError(f"max_threads must be -1 or a positive integer, got {self.max_threads}")
        if self.top_n < 1:
            raise ValueError(f"top_n must be at least 1, got {self.top_n}")
        if self.top_n_aggregation not in ('sum', 'mean'):
            raise ValueError(f"Unknown top_n_aggregation: {self.top_n_aggregation}. Use 'sum' or 'mean'")
        if self.mbr_min_anchor_peptides < 1:
            raise ValueError(f"mbr_min_anchor_peptides must be at least 1, got {self.mbr_min_anchor_peptides}")
        if self.mbr_local_alignment_window is not None and not self.mbr_local_alignment_window > 0:
            raise ValueError(
                f"mbr_local_alignment_window must be positive, got {self.mbr_local_alignment_window}"
            )

    @property
    def n_workers(self) -> int:
        return self.max_threads if self.max_threads > 0 else mp.cpu_count()

    def peak_builder_params(self) -> PeakBuilderParams:
        return PeakBuilderParams(
            ppm_tolerance=self.ppm_tolerance,
            num_isotopes_required=self.num_isotopes_required,
            missed_scans_allowed=self.missed_scans_allowed,
            discrimination_factor=self.peak_split_discrimination_factor,
            min_envelopes_to_split=self.min_envelopes_to_split,
            merge_rt_window=self.peak_merge_rt_window,
            integrate=self.integrate,
        )

    def protein_estimator(self) -> ProteinQuantEstimator:
        if self.advanced_protein_quant:
            return MedianPolishWeightedEstimator()
        return TopNEstimator(self.top_n, self.top_n_aggregation)

    def to_dict(self) -> dict:
        return asdict(self)


class FlashLfqEngine:
    """Label-free quantification of identified peptides across spectra files.

    Example:
        engine = FlashLfqEngine(identifications, normalize=True, match_between_runs=True)
        results = engine.run()

    Args:
        identifications: Identifications from all files
        config: Engine settings (defaults if omitted)
        scan_loader: Callable returning the MS1 scans of a spectra file.
            Defaults to reading mzML from the file's path.
        isotope_provider: Callable mapping a chemical formula to
            (mass, abundance) isotope peaks. Without one, isotope
            distributions are estimated from mass (averagine).
        **overrides: Individual EngineConfig fields

    Raises:
        ValueError: On invalid settings, before any processing
    """

    def __init__(
        self,
        identifications: Iterable[Identification],
        config: Optional[EngineConfig] = None,
        scan_loader: Optional[ScanLoader] = None,
        isotope_provider: Optional[IsotopeProvider] = None,
        **overrides,
    ):
        config = config or EngineConfig()
        known = {f.name for f in fields(EngineConfig)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown engine settings: {', '.join(unknown)}")
        self.config = replace(config, **overrides)
        self.config.validate()

        self.identifications = list(identifications)
        self.spectra_files: list[SpectraFile] = list(dict.fromkeys(i.spectra_file for i in self.identifications))

        self.scan_loader = scan_loader or load_ms1_scans
        self.isotopes = IsotopeDistributionCache(isotope_provider)
        self.indices: dict[SpectraFile, SpectralIndex] = {}

    def _log(self, message: str) -> None:
        logger.log(logging.DEBUG if self.config.silent else logging.INFO, message)

    def run(self) -> FlashLfqResults:
        """Run every phase and return the populated results store."""
        config = self.config
        results = FlashLfqResults(self.spectra_files, self.identifications)

        self._log(f"Quantifying {len(self.identifications)} identifications "
                  f"in {len(self.spectra_files)} spectra files")

        self.isotopes.populate(
            (i.monoisotopic_mass, i.optional_chemical_formula) for i in self.identifications
        )

        peaks = self.quantify_ms2_identified_peptides()
        for f in self.spectra_files:
            results.peaks[f] = peaks[f]

        if config.match_between_runs:
            self.match_between_runs(results.peaks)

        if config.normalize:
            self._log("Normalizing intensities")
            norm = normalize_peaks(results.peaks)
            for step in norm.method_log:
                logger.debug(f"  {step}")

        self._log("Calculating peptide and protein intensities")
        results.calculate_peptide_results()
        results.calculate_protein_results(config.protein_estimator(), config.use_shared_peptides)

        # indices are only needed while recovering peaks
        self.indices.clear()
        self._log("Done")
        return results

    def _quantify_file(self, spectra_file: SpectraFile, identifications: list[Identification]):
        scans = self.scan_loader(spectra_file)
        index = SpectralIndex(spectra_file, scans)
        builder = PeakBuilder(index, self.isotopes, self.config.peak_builder_params())
        peaks = builder.quantify_identifications(identifications)
        return index, peaks

    def quantify_ms2_identified_peptides(self) -> dict[SpectraFile, list[ChromatographicPeak]]:
        """Peak-pick every file in parallel; abort the run if any file fails."""
        by_file: dict[SpectraFile, list[Identification]] = {f: [] for f in self.spectra_files}
        for ident in self.identifications:
            by_file[ident.spectra_file].append(ident)

        n_workers = min(self.config.n_workers, max(1, len(self.spectra_files)))
        self._log(f"Finding peaks using {n_workers} thread(s)")

        peaks: dict[SpectraFile, list[ChromatographicPeak]] = {}
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(self._quantify_file, f, by_file[f]): f
                for f in self.spectra_files
            }
            for future in as_completed(futures):
                spectra_file = futures[future]
                try:
                    index, file_peaks = future.result()
                except Exception:
                    logger.error(f"Failed to quantify {spectra_file.full_path}; aborting run")
                    for pending in futures:
                        pending.cancel()
                    raise
                peaks[spectra_file] = file_peaks
                if self.config.match_between_runs:
                    self.indices[spectra_file] = index
                self._log(f"  {spectra_file}: {len(file_peaks)} peaks "
                          f"({sum(1 for p in file_peaks if p.apex is not None)} detected)")

        return {f: peaks[f] for f in self.spectra_files}

    def match_between_runs(self, peaks: dict[SpectraFile, list[ChromatographicPeak]]) -> None:
        """Align all file pairs, then add recovered peaks to ``peaks`` in place."""
        config = self.config
        if len(self.spectra_files) < 2:
            logger.warning("Match-between-runs needs at least two spectra files; skipping")
            return

        self._log("Aligning retention times")
        aligner = RetentionTimeAligner(
            peaks,
            min_anchor_peptides=config.mbr_min_anchor_peptides,
            local_window=config.mbr_local_alignment_window,
        )
        alignments = aligner.align_all(self.spectra_files)

        self._log("Matching peaks between runs")
        resolver = MatchBetweenRunsResolver(
            self.indices,
            self.isotopes,
            config.peak_builder_params(),
            rt_window=config.mbr_rt_window,
            ppm_tolerance=config.mbr_ppm_tolerance,
            require_msms_id_in_condition=config.require_msms_id_in_condition,
        )
        recovered = resolver.resolve(peaks, alignments, max_workers=config.n_workers)

        for f in self.spectra_files:
            peaks[f] = peaks[f] + recovered[f]
            if recovered[f]:
                self._log(f"  {f}: {len(recovered[f])} peaks recovered by match-between-runs")
