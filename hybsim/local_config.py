"""
local_config.py — Local (trace) part of the segment configuration
=================================================================

Holds the segments of every orbital and the zero-order state of orbitals
without segments. For a density-density interaction the local weight is

    W_loc = exp( sum_i mu_i L_i - sum_{i<j} U_ij O_ij )

with L_i the occupied length of orbital i and O_ij the overlap of orbitals
i and j.
"""

import logging
import math
from pathlib import Path
from typing import Sequence

import numpy as np

from .params import ConfigurationError, Parameters
from .segments import (Segment, find_containing, insert_sorted, interval_pieces,
                       occupied_length, occupied_pieces, overlap)

logger = logging.getLogger("hybsim.local")


def build_u_matrix(n_orbitals: int, U: float, Uprime: float = None,
                   J: float = 0.0) -> np.ndarray:
    """Density-density interaction matrix for ``n_orbitals`` spin-orbitals.

    Orbitals 2b and 2b+1 are the two spins of band b. Same band: U;
    different bands, opposite spin: Uprime; same spin: Uprime - J.
    Uprime defaults to U - 2J.
    """
    if Uprime is None:
        Uprime = U - 2.0 * J
    u = np.zeros((n_orbitals, n_orbitals))
    for i in range(n_orbitals):
        for j in range(n_orbitals):
            if i == j:
                continue
            if i // 2 == j // 2:
                u[i, j] = U
            elif i % 2 == j % 2:
                u[i, j] = Uprime - J
            else:
                u[i, j] = Uprime
    return u


def _read_matrix(path: str, n_orbitals: int) -> np.ndarray:
    if not Path(path).exists():
        raise FileNotFoundError(f"U matrix file not found: {path}")
    u = np.atleast_2d(np.loadtxt(path, dtype=float))
    if u.shape != (n_orbitals, n_orbitals):
        raise ConfigurationError(
            f"U matrix in {path} has shape {u.shape}, expected "
            f"({n_orbitals}, {n_orbitals})")
    if not np.allclose(u, u.T):
        raise ConfigurationError(f"U matrix in {path} is not symmetric")
    np.fill_diagonal(u, 0.0)
    return u


def _read_vector(path: str, n_orbitals: int) -> np.ndarray:
    if not Path(path).exists():
        raise FileNotFoundError(f"MU vector file not found: {path}")
    mu = np.atleast_1d(np.loadtxt(path, dtype=float)).ravel()
    if mu.shape != (n_orbitals,):
        raise ConfigurationError(
            f"MU vector in {path} has {mu.size} entries, expected {n_orbitals}")
    return mu


class LocalConfig:
    """Segments per orbital plus the local (trace) weight."""

    def __init__(self, beta: float, mu: Sequence[float], u_matrix):
        self.beta = float(beta)
        self.mu = np.asarray(mu, dtype=float)
        self.u_matrix = np.asarray(u_matrix, dtype=float)
        self.n_orbitals = len(self.mu)
        if self.u_matrix.shape != (self.n_orbitals, self.n_orbitals):
            raise ConfigurationError(
                f"U matrix shape {self.u_matrix.shape} does not match "
                f"{self.n_orbitals} orbitals")
        self.segments = [[] for _ in range(self.n_orbitals)]
        # zero-order state: occupied or empty when an orbital has no segments
        self.full = [False] * self.n_orbitals

    @classmethod
    def from_parameters(cls, parms: Parameters) -> "LocalConfig":
        n = parms["N_ORBITALS"]
        if parms.exists("U_MATRIX"):
            u = _read_matrix(parms["U_MATRIX"], n)
        else:
            u = build_u_matrix(n, parms["U"], parms.get("Uprime"), parms["J"])
        if parms.exists("MU_VECTOR"):
            mu = _read_vector(parms["MU_VECTOR"], n)
        else:
            mu = np.full(n, parms["MU"])
        return cls(parms["BETA"], mu, u)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------
    def order(self, orbital: int) -> int:
        return len(self.segments[orbital])

    def occupied_pieces(self, orbital: int) -> list[tuple[float, float]]:
        return occupied_pieces(self.segments[orbital], self.full[orbital], self.beta)

    def occupied_length(self, orbital: int) -> float:
        return occupied_length(self.segments[orbital], self.full[orbital], self.beta)

    def overlap(self, i: int, j: int) -> float:
        return overlap(self.occupied_pieces(i), self.occupied_pieces(j))

    def _log_weight(self, segments: list, full: list) -> float:
        pieces = [occupied_pieces(s, f, self.beta) for s, f in zip(segments, full)]
        log_w = 0.0
        for i in range(self.n_orbitals):
            log_w += self.mu[i] * occupied_length(segments[i], full[i], self.beta)
            for j in range(i + 1, self.n_orbitals):
                if self.u_matrix[i, j] != 0.0:
                    log_w -= self.u_matrix[i, j] * overlap(pieces[i], pieces[j])
        return log_w

    def log_weight(self) -> float:
        return self._log_weight(self.segments, self.full)

    def full_weight(self) -> float:
        """Local weight recomputed from scratch."""
        return math.exp(self.log_weight())

    # --------------------------------------------------------
    # Weight ratios
    # --------------------------------------------------------
    def occupation_ratio(self, orbital: int, t_from: float, length: float,
                         direction: int = 1) -> float:
        """Weight ratio for occupying (direction=+1) or emptying (-1) the
        interval of ``length`` starting at ``t_from`` in ``orbital``."""
        piece = interval_pieces(t_from, length, self.beta)
        delta = self.mu[orbital] * length
        for j in range(self.n_orbitals):
            if j != orbital and self.u_matrix[orbital, j] != 0.0:
                delta -= self.u_matrix[orbital, j] * overlap(piece, self.occupied_pieces(j))
        return math.exp(direction * delta)

    def zero_state_ratio(self, orbital: int) -> float:
        direction = -1 if self.full[orbital] else 1
        return self.occupation_ratio(orbital, 0.0, self.beta, direction)

    def permutation_ratio(self, perm: Sequence[int]) -> float:
        """Weight ratio for moving the configuration of orbital ``perm[i]``
        onto orbital ``i`` for every i."""
        new_log = self._log_weight([self.segments[p] for p in perm],
                                   [self.full[p] for p in perm])
        return math.exp(new_log - self.log_weight())

    # --------------------------------------------------------
    # Mutations (only called on accepted moves)
    # --------------------------------------------------------
    def insert_segment(self, orbital: int, seg: Segment) -> None:
        insert_sorted(self.segments[orbital], seg)

    def remove_segment(self, orbital: int, index: int) -> Segment:
        seg = self.segments[orbital].pop(index)
        if not self.segments[orbital]:
            self.full[orbital] = False
        return seg

    def insert_antisegment(self, orbital: int, t_start: float, t_end: float) -> None:
        """Empty the interval from ``t_start`` to ``t_end``."""
        segments = self.segments[orbital]
        if not segments:
            segments.append(Segment(t_end, t_start))
            self.full[orbital] = False
            return
        host = find_containing(segments, t_start, self.beta)
        if host is None:
            raise ValueError(f"time {t_start} is not occupied in orbital {orbital}")
        seg = segments.pop(host)
        insert_sorted(segments, Segment(seg.t_start, t_start))
        insert_sorted(segments, Segment(t_end, seg.t_end))

    def remove_antisegment(self, orbital: int, index: int) -> None:
        """Fill the gap following segment ``index``."""
        segments = self.segments[orbital]
        k = len(segments)
        if k == 1:
            segments.clear()
            self.full[orbital] = True
            return
        left = segments[index]
        right = segments[(index + 1) % k]
        segments.remove(left)
        segments.remove(right)
        insert_sorted(segments, Segment(left.t_start, right.t_end))

    def flip_zero_state(self, orbital: int) -> None:
        if self.segments[orbital]:
            raise ValueError(f"orbital {orbital} has segments")
        self.full[orbital] = not self.full[orbital]

    def permute(self, perm: Sequence[int]) -> None:
        self.segments = [self.segments[p] for p in perm]
        self.full = [self.full[p] for p in perm]

    def snapshot(self) -> tuple:
        return [list(s) for s in self.segments], list(self.full)

    def restore(self, snap: tuple) -> None:
        segments, full = snap
        self.segments = [list(s) for s in segments]
        self.full = list(full)

    def __str__(self) -> str:
        lines = []
        for o in range(self.n_orbitals):
            if self.segments[o]:
                body = "".join(str(seg) for seg in self.segments[o])
            else:
                body = "full" if self.full[o] else "empty"
            lines.append(f"orbital {o}: {body}")
        return "\n".join(lines)
