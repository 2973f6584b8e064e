"""
hybridization.py — Hybridization part of the segment configuration
==================================================================

Per orbital, the creation (segment start) and annihilation (segment end)
operators enter a determinant of the hybridization function,

    F[i, j] = F(e_i - s_j),   F(tau - beta) = -F(tau),

with rows ordered by annihilator time and columns by creator time. The
inverse M = F^{-1} gives cheap insertion (Schur complement) and removal
(cofactor) ratios; it is rebuilt after every accepted change.
"""

import bisect
import logging
from pathlib import Path
from typing import Sequence

import numpy as np

from .params import ConfigurationError, Parameters

logger = logging.getLogger("hybsim.hyb")


# ============================================================
# Hybridization function
# ============================================================
class HybridizationFunction:
    """F_i(tau) on N_TAU+1 equidistant points of [0, beta], linearly
    interpolated and extended antiperiodically to (-beta, 0)."""

    def __init__(self, beta: float, values):
        self.beta = float(beta)
        self.values = np.atleast_2d(np.asarray(values, dtype=float))
        self.n_orbitals, n_points = self.values.shape
        if n_points < 2:
            raise ConfigurationError("hybridization function needs at least two tau points")
        self.n_tau = n_points - 1
        self.grid = np.linspace(0.0, self.beta, n_points)

    @classmethod
    def from_bath(cls, beta: float, n_tau: int, n_orbitals: int,
                  energies: Sequence[float],
                  couplings: Sequence[float]) -> "HybridizationFunction":
        """F(tau) = sum_l V_l^2 exp(-e_l tau) / (1 + exp(-beta e_l)),
        identical for every orbital."""
        if len(energies) != len(couplings):
            raise ConfigurationError(
                f"BATH_ENERGIES ({len(energies)}) and BATH_COUPLINGS "
                f"({len(couplings)}) differ in length")
        tau = np.linspace(0.0, beta, n_tau + 1)
        f = np.zeros_like(tau)
        for eps, v in zip(energies, couplings):
            f += v * v * np.exp(-eps * tau - np.logaddexp(0.0, -beta * eps))
        return cls(beta, np.tile(f, (n_orbitals, 1)))

    @classmethod
    def from_file(cls, path: str, beta: float, n_tau: int,
                  n_orbitals: int) -> "HybridizationFunction":
        """Read columns ``tau F_0 ... F_{n-1}`` and resample onto the grid."""
        if not Path(path).exists():
            raise FileNotFoundError(f"hybridization function file not found: {path}")
        data = np.atleast_2d(np.loadtxt(path, dtype=float))
        if data.shape[1] != n_orbitals + 1:
            raise ConfigurationError(
                f"{path} has {data.shape[1]} columns, expected tau plus "
                f"{n_orbitals} orbitals")
        tau = np.linspace(0.0, beta, n_tau + 1)
        values = [np.interp(tau, data[:, 0], data[:, 1 + o]) for o in range(n_orbitals)]
        return cls(beta, np.array(values))

    @classmethod
    def from_parameters(cls, parms: Parameters) -> "HybridizationFunction":
        if parms.exists("DELTA"):
            return cls.from_file(parms["DELTA"], parms["BETA"], parms["N_TAU"],
                                 parms["N_ORBITALS"])
        return cls.from_bath(parms["BETA"], parms["N_TAU"], parms["N_ORBITALS"],
                             parms["BATH_ENERGIES"], parms["BATH_COUPLINGS"])

    def __call__(self, orbital: int, tau):
        tau = np.asarray(tau, dtype=float)
        negative = tau < 0
        shifted = np.where(negative, tau + self.beta, tau)
        f = np.interp(shifted.ravel(), self.grid, self.values[orbital]).reshape(tau.shape)
        return np.where(negative, -f, f)

    def matrix(self, orbital: int, annihilators: Sequence[float],
               creators: Sequence[float]) -> np.ndarray:
        a = np.asarray(annihilators, dtype=float)
        c = np.asarray(creators, dtype=float)
        return self(orbital, a[:, None] - c[None, :])


# ============================================================
# Per-orbital determinant
# ============================================================
def ordering_sign(creators: Sequence[float], annihilators: Sequence[float]) -> float:
    """(-1)^k when a segment wraps around beta (the earliest operator is an
    annihilator), 1 otherwise."""
    if not creators:
        return 1.0
    if annihilators[0] < creators[0]:
        return -1.0 if len(creators) % 2 else 1.0
    return 1.0


class HybMatrix:
    """Operator times, F matrix inverse and determinant of one orbital."""

    def __init__(self, orbital: int, delta: HybridizationFunction):
        self.orbital = orbital
        self.delta = delta
        self.creators = []
        self.annihilators = []
        self.inverse = np.zeros((0, 0))
        self.determinant = 1.0

    @property
    def size(self) -> int:
        return len(self.creators)

    def weight(self) -> float:
        return self.determinant * ordering_sign(self.creators, self.annihilators)

    def weight_of(self, creators: Sequence[float],
                  annihilators: Sequence[float]) -> float:
        """Weight of an arbitrary operator set, computed from scratch."""
        creators = sorted(creators)
        annihilators = sorted(annihilators)
        if not creators:
            return 1.0
        f = self.delta.matrix(self.orbital, annihilators, creators)
        return float(np.linalg.det(f)) * ordering_sign(creators, annihilators)

    def insert_ratio(self, t_create: float, t_annihilate: float) -> float:
        n = self.size
        corner = float(self.delta(self.orbital, t_annihilate - t_create))
        if n == 0:
            det_ratio = corner
        else:
            row = self.delta(self.orbital, t_annihilate - np.asarray(self.creators))
            col = self.delta(self.orbital, np.asarray(self.annihilators) - t_create)
            det_ratio = corner - float(row @ self.inverse @ col)
        r = bisect.bisect(self.annihilators, t_annihilate)
        c = bisect.bisect(self.creators, t_create)
        perm_sign = -1.0 if (r + c) % 2 else 1.0
        new_creators = self.creators[:c] + [t_create] + self.creators[c:]
        new_annihilators = self.annihilators[:r] + [t_annihilate] + self.annihilators[r:]
        sign_ratio = (ordering_sign(new_creators, new_annihilators)
                      * ordering_sign(self.creators, self.annihilators))
        return det_ratio * perm_sign * sign_ratio

    def remove_ratio(self, t_create: float, t_annihilate: float) -> float:
        r = self.annihilators.index(t_annihilate)
        c = self.creators.index(t_create)
        perm_sign = -1.0 if (r + c) % 2 else 1.0
        det_ratio = perm_sign * float(self.inverse[c, r])
        new_creators = self.creators[:c] + self.creators[c + 1:]
        new_annihilators = self.annihilators[:r] + self.annihilators[r + 1:]
        sign_ratio = (ordering_sign(new_creators, new_annihilators)
                      * ordering_sign(self.creators, self.annihilators))
        return det_ratio * sign_ratio

    def insert(self, t_create: float, t_annihilate: float) -> None:
        bisect.insort(self.creators, t_create)
        bisect.insort(self.annihilators, t_annihilate)
        self._rebuild()

    def remove(self, t_create: float, t_annihilate: float) -> None:
        self.creators.remove(t_create)
        self.annihilators.remove(t_annihilate)
        self._rebuild()

    def set_operators(self, creators: Sequence[float],
                      annihilators: Sequence[float]) -> None:
        self.creators = sorted(creators)
        self.annihilators = sorted(annihilators)
        self._rebuild()

    def _rebuild(self) -> None:
        if not self.creators:
            self.inverse = np.zeros((0, 0))
            self.determinant = 1.0
            return
        f = self.delta.matrix(self.orbital, self.annihilators, self.creators)
        det = float(np.linalg.det(f))
        if det == 0.0 or not np.isfinite(det):
            raise np.linalg.LinAlgError(
                f"singular hybridization matrix in orbital {self.orbital}")
        self.inverse = np.linalg.inv(f)
        self.determinant = det


# ============================================================
# All orbitals
# ============================================================
class HybConfig:
    """Hybridization determinants of all orbitals."""

    def __init__(self, delta: HybridizationFunction):
        self.delta = delta
        self.n_orbitals = delta.n_orbitals
        self.matrices = [HybMatrix(o, delta) for o in range(self.n_orbitals)]

    def full_weight(self) -> float:
        """Product of determinants recomputed from scratch."""
        w = 1.0
        for m in self.matrices:
            w *= m.weight_of(m.creators, m.annihilators)
        return w

    def insert_ratio(self, orbital: int, t_create: float, t_annihilate: float) -> float:
        return self.matrices[orbital].insert_ratio(t_create, t_annihilate)

    def remove_ratio(self, orbital: int, t_create: float, t_annihilate: float) -> float:
        return self.matrices[orbital].remove_ratio(t_create, t_annihilate)

    def insert(self, orbital: int, t_create: float, t_annihilate: float) -> None:
        self.matrices[orbital].insert(t_create, t_annihilate)

    def remove(self, orbital: int, t_create: float, t_annihilate: float) -> None:
        self.matrices[orbital].remove(t_create, t_annihilate)

    def permutation_ratio(self, perm: Sequence[int]) -> float:
        """Weight ratio for moving the operators of orbital ``perm[i]`` onto
        orbital ``i`` (orbitals may differ in their hybridization function)."""
        old = 1.0
        new = 1.0
        for i, p in enumerate(perm):
            if i == p:
                continue
            old *= self.matrices[i].weight()
            new *= self.matrices[i].weight_of(self.matrices[p].creators,
                                              self.matrices[p].annihilators)
        return new / old

    def permute(self, perm: Sequence[int]) -> None:
        ops = [(list(m.creators), list(m.annihilators)) for m in self.matrices]
        for i, p in enumerate(perm):
            if i != p:
                self.matrices[i].set_operators(*ops[p])

    def snapshot(self) -> list:
        return [(list(m.creators), list(m.annihilators), m.inverse.copy(), m.determinant)
                for m in self.matrices]

    def restore(self, snap: list) -> None:
        for m, (creators, annihilators, inverse, det) in zip(self.matrices, snap):
            m.creators = list(creators)
            m.annihilators = list(annihilators)
            m.inverse = inverse.copy()
            m.determinant = det

    def __str__(self) -> str:
        lines = []
        for m in self.matrices:
            lines.append(f"orbital {m.orbital}: {m.size} operator pairs, "
                         f"det = {m.determinant:.6g}")
        return "\n".join(lines)
