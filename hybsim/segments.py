"""
segments.py — Segment geometry on the imaginary-time circle [0, beta)
=====================================================================

A segment is an occupied interval of one orbital. Segments of an orbital are
kept sorted by start time and never overlap; at most one of them (the last)
wraps around beta, i.e. has ``t_end < t_start``.
"""

import bisect
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True, order=True)
class Segment:
    """Occupied interval from a creation operator at ``t_start`` to an
    annihilation operator at ``t_end``."""
    t_start: float
    t_end: float

    def wraps(self) -> bool:
        return self.t_end < self.t_start

    def length(self, beta: float) -> float:
        return (self.t_end - self.t_start) % beta

    def pieces(self, beta: float) -> list[tuple[float, float]]:
        return interval_pieces(self.t_start, self.length(beta), beta)

    def __str__(self) -> str:
        return f"( {self.t_start} , {self.t_end} ) "


def interval_pieces(t_from: float, length: float,
                    beta: float) -> list[tuple[float, float]]:
    """Split an interval of ``length`` starting at ``t_from`` into
    non-wrapping ``(a, b)`` pieces inside [0, beta]."""
    t_to = t_from + length
    if t_to <= beta:
        return [(t_from, t_to)]
    return [(t_from, beta), (0.0, t_to - beta)]


def occupied_pieces(segments: list[Segment], full: bool,
                    beta: float) -> list[tuple[float, float]]:
    if not segments:
        return [(0.0, beta)] if full else []
    pieces = []
    for seg in segments:
        pieces.extend(seg.pieces(beta))
    return pieces


def overlap(pieces_a: list[tuple[float, float]],
            pieces_b: list[tuple[float, float]]) -> float:
    """Total length shared by two sets of non-wrapping pieces."""
    total = 0.0
    for a0, a1 in pieces_a:
        for b0, b1 in pieces_b:
            lo = max(a0, b0)
            hi = min(a1, b1)
            if hi > lo:
                total += hi - lo
    return total


def occupied_length(segments: list[Segment], full: bool, beta: float) -> float:
    if not segments:
        return beta if full else 0.0
    return sum(seg.length(beta) for seg in segments)


def find_containing(segments: list[Segment], t: float,
                    beta: float) -> Optional[int]:
    """Index of the segment covering time ``t``, or None if ``t`` is empty."""
    if not segments:
        return None
    starts = [seg.t_start for seg in segments]
    idx = bisect.bisect_right(starts, t) - 1
    # idx == -1 means t precedes every start: only the wrapping tail can cover it
    seg = segments[idx]
    if seg.wraps():
        if t >= seg.t_start or t < seg.t_end:
            return idx % len(segments)
        return None
    if idx >= 0 and seg.t_start <= t < seg.t_end:
        return idx
    return None


def next_start_distance(segments: list[Segment], t: float,
                        beta: float) -> float:
    """Distance from ``t`` to the next segment start, going forward in time
    and wrapping around beta. Returns beta when there are no segments."""
    if not segments:
        return beta
    starts = [seg.t_start for seg in segments]
    idx = bisect.bisect_right(starts, t)
    nxt = starts[idx % len(starts)]
    dist = (nxt - t) % beta
    return dist if dist > 0 else beta


def occupation(segments: list[Segment], full: bool, times: np.ndarray,
               beta: float) -> np.ndarray:
    """Boolean occupation of one orbital evaluated at ``times``."""
    times = np.asarray(times, dtype=float)
    occ = np.zeros(times.shape, dtype=bool)
    for a, b in occupied_pieces(segments, full, beta):
        occ |= (times >= a) & (times < b)
    return occ


def insert_sorted(segments: list[Segment], seg: Segment) -> None:
    bisect.insort(segments, seg)
