"""Per-file index over observed MS1 centroids.

All peaks of a file are held in flat numpy arrays. Two orderings are kept:
by (scan, m/z) with per-scan offsets for single-scan lookups, and by m/z alone
for cross-scan range queries. Construction sorts once (O(P log P)); queries are
binary searches (O(log P + k)).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .data_model import IndexedPeak, SpectraFile

logger = logging.getLogger(__name__)


@dataclass
class Ms1Scan:
    """One MS1 scan as delivered by a scan source."""
    retention_time: float
    mz_array: np.ndarray
    intensity_array: np.ndarray
    scan_number: Optional[int] = None
    metadata: dict = field(default_factory=dict)


def ppm_window(mz: float, ppm_tolerance: float) -> tuple[float, float]:
    delta = mz * ppm_tolerance / 1e6
    return mz - delta, mz + delta


class SpectralIndex:
    """Retention-time ordered, m/z sorted index for one spectra file."""

    def __init__(self, spectra_file: SpectraFile, scans: Sequence[Ms1Scan]):
        self.spectra_file = spectra_file

        ordered = sorted(scans, key=lambda s: s.retention_time)
        self.scan_retention_times = np.array([s.retention_time for s in ordered], dtype=float)
        self.scan_numbers = [s.scan_number for s in ordered]

        mz_parts, int_parts, scan_parts = [], [], []
        for i, scan in enumerate(ordered):
            mz = np.asarray(scan.mz_array, dtype=float)
            intensity = np.asarray(scan.intensity_array, dtype=float)
            if mz.shape != intensity.shape:
                raise ValueError(
                    f"Scan {scan.scan_number} in {spectra_file} has {len(mz)} m/z values "
                    f"but {len(intensity)} intensities"
                )
            valid = np.isfinite(mz) & (intensity > 0)
            mz_parts.append(mz[valid])
            int_parts.append(intensity[valid])
            scan_parts.append(np.full(valid.sum(), i, dtype=np.int64))

        if mz_parts:
            mz_all = np.concatenate(mz_parts)
            int_all = np.concatenate(int_parts)
            scan_all = np.concatenate(scan_parts)
        else:
            mz_all = np.zeros(0)
            int_all = np.zeros(0)
            scan_all = np.zeros(0, dtype=np.int64)

        # primary ordering: scan, then m/z
        order = np.lexsort((mz_all, scan_all))
        self.mz = mz_all[order]
        self.intensity = int_all[order]
        self.scan_index = scan_all[order]
        self.scan_offsets = np.searchsorted(self.scan_index, np.arange(self.n_scans + 1))

        # secondary ordering for cross-scan queries
        self._mz_order = np.argsort(self.mz, kind='stable')
        self._mz_sorted = self.mz[self._mz_order]

        logger.debug(f"Indexed {self.n_peaks} peaks from {self.n_scans} scans of {spectra_file}")

    @property
    def n_scans(self) -> int:
        return len(self.scan_retention_times)

    @property
    def n_peaks(self) -> int:
        return len(self.mz)

    def _peak(self, i: int) -> IndexedPeak:
        s = int(self.scan_index[i])
        return IndexedPeak(
            mz=float(self.mz[i]),
            intensity=float(self.intensity[i]),
            zero_based_scan_index=s,
            retention_time=float(self.scan_retention_times[s]),
        )

    def scan_index_for_retention_time(self, retention_time: float) -> Optional[int]:
        """Index of the scan whose retention time is nearest (earlier on ties)."""
        if self.n_scans == 0 or not np.isfinite(retention_time):
            return None
        i = int(np.searchsorted(self.scan_retention_times, retention_time))
        if i <= 0:
            return 0
        if i >= self.n_scans:
            return self.n_scans - 1
        before = retention_time - self.scan_retention_times[i - 1]
        after = self.scan_retention_times[i] - retention_time
        return i - 1 if before <= after else i

    def scan_range_for_window(self, rt_start: float, rt_end: float) -> tuple[int, int]:
        """Inclusive scan-index bounds covering [rt_start, rt_end]; empty if first > last."""
        first = int(np.searchsorted(self.scan_retention_times, rt_start, side='left'))
        last = int(np.searchsorted(self.scan_retention_times, rt_end, side='right')) - 1
        return first, last

    def get_peak(self, mz: float, scan_index: int, ppm_tolerance: float) -> Optional[IndexedPeak]:
        """Closest peak to ``mz`` within tolerance in one scan."""
        if not np.isfinite(mz) or scan_index < 0 or scan_index >= self.n_scans:
            return None
        start, end = self.scan_offsets[scan_index], self.scan_offsets[scan_index + 1]
        low, high = ppm_window(mz, ppm_tolerance)
        lo = start + np.searchsorted(self.mz[start:end], low, side='left')
        hi = start + np.searchsorted(self.mz[start:end], high, side='right')
        if lo >= hi:
            return None
        best = lo + int(np.argmin(np.abs(self.mz[lo:hi] - mz)))
        return self._peak(best)

    def query(
        self,
        mz: float,
        ppm_tolerance: float,
        min_scan: Optional[int] = None,
        max_scan: Optional[int] = None,
    ) -> list[IndexedPeak]:
        """All peaks within tolerance of ``mz``, optionally bounded by scan index.

        Returns peaks ordered by scan index, then m/z.
        """
        if not np.isfinite(mz):
            return []
        low, high = ppm_window(mz, ppm_tolerance)
        lo = np.searchsorted(self._mz_sorted, low, side='left')
        hi = np.searchsorted(self._mz_sorted, high, side='right')
        hits = self._mz_order[lo:hi]
        if min_scan is not None:
            hits = hits[self.scan_index[hits] >= min_scan]
        if max_scan is not None:
            hits = hits[self.scan_index[hits] <= max_scan]
        return [self._peak(i) for i in np.sort(hits)]
