"""
Retention time alignment between pairs of runs.

Anchors are peptides confidently detected by MS/MS in both runs (non-ambiguous,
apex of the most intense peak, identifications flagged for alignment). The
global shift is the median of (donor RT - acceptor RT) over anchors, which is
robust to a minority of wrong anchors; the spread is the scaled MAD of the
residual shifts. When a local window is configured, the shift is recomputed
from anchors whose donor RT lies within the window, falling back to the global
shift when too few anchors are nearby.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .data_model import ChromatographicPeak, SpectraFile

logger = logging.getLogger(__name__)

MAD_SCALE = 1.4826


@dataclass
class RtAlignment:
    """Mapping of donor retention times into an acceptor run."""
    donor: SpectraFile
    acceptor: SpectraFile
    offset: float
    spread: float
    donor_anchor_rts: np.ndarray = field(repr=False)
    shifts: np.ndarray = field(repr=False)
    local_window: Optional[float] = None
    min_local_anchors: int = 3

    @property
    def n_anchors(self) -> int:
        return len(self.shifts)

    def project(self, donor_rt: float) -> float:
        """Predicted acceptor retention time for a donor retention time."""
        shift = self.offset
        if self.local_window is not None:
            nearby = np.abs(self.donor_anchor_rts - donor_rt) <= self.local_window
            if nearby.sum() >= self.min_local_anchors:
                shift = float(np.median(self.shifts[nearby]))
        return donor_rt - shift


def anchor_retention_times(peaks: list[ChromatographicPeak]) -> dict[str, float]:
    """Apex RT of the most intense usable MS/MS peak per modified sequence."""
    best: dict[str, ChromatographicPeak] = {}
    for peak in peaks:
        if peak.is_mbr_peak or peak.is_ambiguous or peak.apex is None:
            continue
        ident = peak.identifications[0]
        if not ident.use_for_alignment:
            continue
        stored = best.get(ident.modified_sequence)
        if stored is None or peak.intensity > stored.intensity:
            best[ident.modified_sequence] = peak
    return {seq: peak.apex_retention_time for seq, peak in best.items()}


class RetentionTimeAligner:
    """Computes pairwise alignments from the MS/MS peaks of every run."""

    def __init__(
        self,
        peaks: dict[SpectraFile, list[ChromatographicPeak]],
        min_anchor_peptides: int = 1,
        local_window: Optional[float] = None,
    ):
        self.min_anchor_peptides = min_anchor_peptides
        self.local_window = local_window
        self._anchors = {f: anchor_retention_times(p) for f, p in peaks.items()}

    def align(self, donor: SpectraFile, acceptor: SpectraFile) -> Optional[RtAlignment]:
        """Alignment of ``donor`` onto ``acceptor``, or None if not enough anchors."""
        donor_rts = self._anchors.get(donor, {})
        acceptor_rts = self._anchors.get(acceptor, {})
        shared = sorted(set(donor_rts) & set(acceptor_rts))

        if len(shared) < max(1, self.min_anchor_peptides):
            logger.warning(
                f"Only {len(shared)} anchor peptides shared between {donor} and {acceptor}; "
                f"skipping match-between-runs for this pair"
            )
            return None

        d = np.array([donor_rts[s] for s in shared])
        a = np.array([acceptor_rts[s] for s in shared])
        shifts = d - a
        offset = float(np.median(shifts))
        spread = float(MAD_SCALE * np.median(np.abs(shifts - offset)))

        logger.debug(
            f"RT alignment {donor} -> {acceptor}: {len(shared)} anchors, "
            f"offset={offset:.3f} min, spread={spread:.3f} min"
        )
        return RtAlignment(
            donor=donor,
            acceptor=acceptor,
            offset=offset,
            spread=spread,
            donor_anchor_rts=d,
            shifts=shifts,
            local_window=self.local_window,
        )

    def align_all(self, files: list[SpectraFile]) -> dict[tuple[SpectraFile, SpectraFile], RtAlignment]:
        """Every ordered (donor, acceptor) pair that can be aligned."""
        alignments = {}
        for acceptor in files:
            for donor in files:
                if donor == acceptor:
                    continue
                alignment = self.align(donor, acceptor)
                if alignment is not None:
                    alignments[(donor, acceptor)] = alignment
        return alignments
