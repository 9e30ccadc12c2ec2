"""
Chromatographic peak construction for one spectra file.

For every identification the builder:

1. Seeds at the scan nearest the identification's retention time.
2. Walks towards later scans, then towards earlier scans, collecting one
   isotopic envelope per scan. Scans without an envelope are stepped over; the
   walk stops after more than ``missed_scans_allowed`` consecutive misses.
3. Splits the trace at a valley: walking outward from the apex, the lowest
   envelope seen so far is the valley candidate; when a later envelope rises so
   that (rise - valley) / rise exceeds ``discrimination_factor`` the trace is
   cut at the valley and the side not containing the identification is
   dropped. Splitting repeats until no valley qualifies.

Peaks sharing an apex centroid are then merged (their identifications pooled,
which is how ambiguity arises), as are peaks of the same sequence whose apexes
lie within ``merge_rt_window``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from .data_model import ChromatographicPeak, Identification, IsotopicEnvelope
from .envelopes import EnvelopeDetector
from .isotopes import IsotopeDistribution, IsotopeDistributionCache
from .spectral_index import SpectralIndex

logger = logging.getLogger(__name__)


@dataclass
class PeakBuilderParams:
    """Peak finding constants. Defaults reproduce the reference scenarios."""
    ppm_tolerance: float = 10.0
    num_isotopes_required: int = 2
    missed_scans_allowed: int = 2
    discrimination_factor: float = 0.6
    min_envelopes_to_split: int = 5
    merge_rt_window: float = 0.05
    integrate: bool = False


class PeakBuilder:
    """Builds and error-checks chromatographic peaks in one file."""

    def __init__(
        self,
        index: SpectralIndex,
        isotopes: IsotopeDistributionCache,
        params: Optional[PeakBuilderParams] = None,
    ):
        self.index = index
        self.isotopes = isotopes
        self.params = params or PeakBuilderParams()
        self.detector = EnvelopeDetector(
            index,
            self.params.ppm_tolerance,
            self.params.num_isotopes_required,
        )

    # ------------------------------------------------------------------
    # Trace walking
    # ------------------------------------------------------------------

    def distribution_for(self, identification: Identification) -> IsotopeDistribution:
        return self.isotopes.get(
            identification.monoisotopic_mass,
            identification.optional_chemical_formula,
        )

    def walk_trace(
        self,
        distribution: IsotopeDistribution,
        monoisotopic_mass: float,
        charge: int,
        seed_scan: int,
        min_scan: int = 0,
        max_scan: Optional[int] = None,
    ) -> list[IsotopicEnvelope]:
        """Collect envelopes outward from ``seed_scan`` tolerating short gaps."""
        if max_scan is None:
            max_scan = self.index.n_scans - 1

        envelopes = []
        for direction in (1, -1):
            missed = 0
            scan = seed_scan if direction == 1 else seed_scan - 1
            while min_scan <= scan <= max_scan:
                env = self.detector.find_envelope(distribution, monoisotopic_mass, charge, scan)
                if env is None:
                    missed += 1
                    if missed > self.params.missed_scans_allowed:
                        break
                else:
                    missed = 0
                    envelopes.append(env)
                scan += direction

        envelopes.sort(key=lambda e: e.scan_index)
        return envelopes

    # ------------------------------------------------------------------
    # Splitting
    # ------------------------------------------------------------------

    def find_valley(self, peak: ChromatographicPeak) -> Optional[IsotopicEnvelope]:
        """Valley envelope at which the trace should be cut, if any."""
        if peak.apex is None or len(peak.isotopic_envelopes) < self.params.min_envelopes_to_split:
            return None

        timepoints = [e for e in peak.isotopic_envelopes if e.charge_state == peak.apex.charge_state]
        apex_index = timepoints.index(peak.apex)

        for direction in (1, -1):
            valley = None
            i = apex_index + direction
            while 0 <= i < len(timepoints):
                timepoint = timepoints[i]
                if valley is None or timepoint.intensity < valley.intensity:
                    valley = timepoint
                rise = (timepoint.intensity - valley.intensity) / timepoint.intensity
                if rise > self.params.discrimination_factor:
                    return valley
                i += direction
        return None

    def split_peak(self, peak: ChromatographicPeak, identification_time: float) -> None:
        """Cut at valleys until none remains, keeping the identification's side."""
        while True:
            valley = self.find_valley(peak)
            if valley is None:
                return
            valley_rt = valley.retention_time
            if identification_time > valley_rt:
                kept = [e for e in peak.isotopic_envelopes if e.retention_time > valley_rt]
            else:
                kept = [e for e in peak.isotopic_envelopes if e.retention_time < valley_rt]
            peak.isotopic_envelopes = kept
            peak.split_rt = valley_rt
            peak.calculate_intensity(self.params.integrate)

    # ------------------------------------------------------------------
    # Peak construction
    # ------------------------------------------------------------------

    def build_peak(
        self,
        identification: Identification,
        seed_scan: Optional[int] = None,
        identification_time: Optional[float] = None,
        is_mbr_peak: bool = False,
        min_scan: int = 0,
        max_scan: Optional[int] = None,
    ) -> ChromatographicPeak:
        """Grow, split and finalize the peak for one identification."""
        peak = ChromatographicPeak(identification, is_mbr_peak, self.index.spectra_file)

        if identification_time is None:
            identification_time = identification.ms2_retention_time
        if seed_scan is None:
            seed_scan = self.index.scan_index_for_retention_time(identification_time)

        if seed_scan is not None:
            envelopes = self.walk_trace(
                self.distribution_for(identification),
                identification.monoisotopic_mass,
                identification.precursor_charge,
                seed_scan,
                min_scan=min_scan,
                max_scan=max_scan,
            )
            peak.set_envelopes(envelopes)

        peak.calculate_intensity(self.params.integrate)
        self.split_peak(peak, identification_time)
        peak.resolve_identifications()
        return peak

    def quantify_identifications(self, identifications: Iterable[Identification]) -> list[ChromatographicPeak]:
        """Build, then merge, the MS/MS-identified peaks of this file."""
        peaks = [self.build_peak(ident) for ident in identifications]
        return self.merge_peaks(peaks)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge_peaks(self, peaks: list[ChromatographicPeak]) -> list[ChromatographicPeak]:
        """Collapse duplicate peaks so one elution event is counted once.

        Zero-envelope peaks are kept (one per sequence) only for sequences that
        have no detected peak in this file.
        """
        integrate = self.params.integrate

        by_apex: dict = {}
        undetected: list[ChromatographicPeak] = []
        for peak in peaks:
            if peak.apex is None:
                undetected.append(peak)
                continue
            key = (peak.apex.indexed_peak, peak.apex.charge_state)
            stored = by_apex.get(key)
            if stored is None:
                by_apex[key] = peak
            else:
                stored.merge_with(peak, integrate)

        merged = self._merge_nearby(list(by_apex.values()))

        detected_sequences = {
            ident.modified_sequence
            for peak in merged
            for ident in peak.identifications
        }
        undetected_by_sequence: dict[str, ChromatographicPeak] = {}
        for peak in undetected:
            seq = peak.identifications[0].modified_sequence
            if seq in detected_sequences:
                continue
            stored = undetected_by_sequence.get(seq)
            if stored is None:
                undetected_by_sequence[seq] = peak
            else:
                stored.merge_with(peak, integrate)

        result = merged + list(undetected_by_sequence.values())
        result.sort(key=_peak_sort_key)
        return result

    def _merge_nearby(self, peaks: list[ChromatographicPeak]) -> list[ChromatographicPeak]:
        """Merge peaks of the same sequence set whose apexes are within the window."""
        window = self.params.merge_rt_window
        groups: dict[frozenset, list[ChromatographicPeak]] = defaultdict(list)
        for peak in peaks:
            groups[frozenset(i.modified_sequence for i in peak.identifications)].append(peak)

        merged = []
        for group in groups.values():
            group.sort(key=lambda p: p.apex_retention_time)
            current = group[0]
            for peak in group[1:]:
                if peak.apex_retention_time - current.apex_retention_time <= window:
                    current.merge_with(peak, self.params.integrate)
                else:
                    merged.append(current)
                    current = peak
            merged.append(current)
        return merged


def _peak_sort_key(peak: ChromatographicPeak):
    ident = peak.identifications[0]
    apex_rt = peak.apex_retention_time
    return (ident.modified_sequence, apex_rt if apex_rt == apex_rt else float('inf'))
