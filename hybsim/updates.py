"""
updates.py — Metropolis-Hastings update kernel
==============================================

One invocation of the kernel:
  1. Draw a move type from the configured schedule
  2. Let the move's handler build a proposal: local ratio, hybridization
     ratio, proposal-density ratio and a commit action
  3. Accept with P = min(1, |R|), R = local * hyb * proposal
  4. On accept, commit to both configurations atomically and flip the
     running sign if R < 0

Proposals never mutate the configuration; only ``commit`` does, and a commit
that fails numerically is rolled back. Impossible or degenerate proposals
count as rejections.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .hybridization import HybConfig
from .local_config import LocalConfig
from .params import ConfigurationError, Parameters
from .segments import Segment, find_containing, next_start_distance
from .state import N_MOVES, MoveType, SimulationState

logger = logging.getLogger("hybsim.updates")

DEFAULT_MOVE_WEIGHTS = {
    MoveType.CHANGE_ZERO_STATE: 1.0,
    MoveType.INSERT_SEGMENT: 2.0,
    MoveType.REMOVE_SEGMENT: 2.0,
    MoveType.INSERT_ANTISEGMENT: 2.0,
    MoveType.REMOVE_ANTISEGMENT: 2.0,
    MoveType.SWAP_SEGMENT: 1.0,
    MoveType.GLOBAL_FLIP: 0.5,
}

_NUMERICAL_ERRORS = (np.linalg.LinAlgError, ZeroDivisionError,
                     FloatingPointError, OverflowError)


# ============================================================
# Move selection
# ============================================================
class MoveSchedule:
    """Discrete distribution over move types.

    Swap and global flip have probability zero unless enabled.
    """

    def __init__(self, weights: Optional[dict] = None, spin_flip: bool = False,
                 global_flip: bool = False):
        merged = dict(DEFAULT_MOVE_WEIGHTS)
        merged.update(weights or {})
        w = np.array([float(merged[m]) for m in MoveType])
        if not spin_flip:
            w[MoveType.SWAP_SEGMENT] = 0.0
        if not global_flip:
            w[MoveType.GLOBAL_FLIP] = 0.0
        if np.any(w < 0) or w.sum() <= 0:
            raise ConfigurationError(f"invalid move weights {merged}")
        cumulative = np.cumsum(w)
        self.probabilities = w / cumulative[-1]
        # entries equal to the total become exactly 1.0, so trailing
        # zero-probability moves are unreachable for u in [0, 1)
        self._cumulative = cumulative / cumulative[-1]

    @classmethod
    def from_parameters(cls, parms: Parameters) -> "MoveSchedule":
        weights = {}
        for name, value in (parms.get("MOVE_WEIGHTS") or {}).items():
            try:
                move = MoveType[str(name).upper()]
            except KeyError:
                raise ConfigurationError(
                    f"unknown update type {name!r} in MOVE_WEIGHTS; expected one "
                    f"of {[m.name for m in MoveType]}") from None
            weights[move] = float(value)
        return cls(weights, spin_flip=parms["SPINFLIP"], global_flip=parms["GLOBALFLIP"])

    def select(self, u: float) -> MoveType:
        idx = int(np.searchsorted(self._cumulative, u, side="right"))
        return MoveType(min(idx, N_MOVES - 1))

    def ratio(self, forward: MoveType, reverse: MoveType) -> float:
        """Selection-probability ratio p(reverse) / p(forward)."""
        return self.probabilities[reverse] / self.probabilities[forward]


@dataclass
class Proposal:
    move: MoveType
    local_ratio: float
    hyb_ratio: float
    proposal_ratio: float
    commit: Callable[[], None]

    @property
    def weight_ratio(self) -> float:
        return self.local_ratio * self.hyb_ratio

    @property
    def ratio(self) -> float:
        return self.weight_ratio * self.proposal_ratio


# ============================================================
# Kernel
# ============================================================
class UpdateKernel:
    """Proposes, accepts or rejects one move per ``step``."""

    def __init__(self, local_config: LocalConfig, hyb_config: HybConfig,
                 schedule: MoveSchedule, rng: np.random.Generator):
        self.local = local_config
        self.hyb = hyb_config
        self.schedule = schedule
        self.rng = rng
        self.beta = local_config.beta
        self._handlers = {
            MoveType.CHANGE_ZERO_STATE: self._propose_change_zero_state,
            MoveType.INSERT_SEGMENT: self._propose_insert_segment,
            MoveType.REMOVE_SEGMENT: self._propose_remove_segment,
            MoveType.INSERT_ANTISEGMENT: self._propose_insert_antisegment,
            MoveType.REMOVE_ANTISEGMENT: self._propose_remove_antisegment,
            MoveType.SWAP_SEGMENT: self._propose_swap_segment,
            MoveType.GLOBAL_FLIP: self._propose_global_flip,
        }

    def step(self, state: SimulationState,
             move: Optional[MoveType] = None) -> bool:
        """Run one update; returns whether it was accepted."""
        if move is None:
            move = self.schedule.select(self.rng.random())
        state.nprop[move] += 1
        try:
            with np.errstate(divide="raise", over="raise", invalid="raise"):
                proposal = self._handlers[move]()
                if proposal is None:
                    return False
                ratio = proposal.ratio
        except _NUMERICAL_ERRORS as exc:
            logger.debug(f"{move.label}: degenerate proposal rejected ({exc})")
            return False
        if ratio == 0.0 or not math.isfinite(ratio):
            return False
        if self.rng.random() >= min(1.0, abs(ratio)):
            return False
        if not self._commit(proposal):
            return False
        state.nacc[move] += 1
        if ratio < 0:
            state.sign = -state.sign
        state.log_weight += math.log(abs(proposal.weight_ratio))
        return True

    def _commit(self, proposal: Proposal) -> bool:
        local_snap = self.local.snapshot()
        hyb_snap = self.hyb.snapshot()
        try:
            with np.errstate(divide="raise", over="raise", invalid="raise"):
                proposal.commit()
        except _NUMERICAL_ERRORS as exc:
            self.local.restore(local_snap)
            self.hyb.restore(hyb_snap)
            logger.debug(f"{proposal.move.label}: commit rolled back ({exc})")
            return False
        return True

    def _random_orbital(self) -> int:
        return int(self.rng.integers(self.local.n_orbitals))

    # --------------------------------------------------------
    # Handlers
    # --------------------------------------------------------
    def _propose_change_zero_state(self) -> Optional[Proposal]:
        orbital = self._random_orbital()
        if self.local.segments[orbital]:
            return None
        return Proposal(
            MoveType.CHANGE_ZERO_STATE,
            self.local.zero_state_ratio(orbital), 1.0, 1.0,
            lambda: self.local.flip_zero_state(orbital))

    def _propose_insert_segment(self) -> Optional[Proposal]:
        beta = self.beta
        orbital = self._random_orbital()
        segments = self.local.segments[orbital]
        if not segments and self.local.full[orbital]:
            return None
        t_start = self.rng.random() * beta
        if find_containing(segments, t_start, beta) is not None:
            return None
        l_max = next_start_distance(segments, t_start, beta)
        length = self.rng.random() * l_max
        t_end = (t_start + length) % beta
        if length <= 0.0 or t_end == t_start:
            return None
        k = len(segments)

        def commit():
            self.local.insert_segment(orbital, Segment(t_start, t_end))
            self.hyb.insert(orbital, t_start, t_end)

        return Proposal(
            MoveType.INSERT_SEGMENT,
            self.local.occupation_ratio(orbital, t_start, length, 1),
            self.hyb.insert_ratio(orbital, t_start, t_end),
            beta * l_max / (k + 1)
            * self.schedule.ratio(MoveType.INSERT_SEGMENT, MoveType.REMOVE_SEGMENT),
            commit)

    def _propose_remove_segment(self) -> Optional[Proposal]:
        beta = self.beta
        orbital = self._random_orbital()
        segments = self.local.segments[orbital]
        k = len(segments)
        if k == 0:
            return None
        index = int(self.rng.integers(k))
        seg = segments[index]
        if k == 1:
            l_max = beta
        else:
            l_max = (segments[(index + 1) % k].t_start - seg.t_start) % beta

        def commit():
            self.local.remove_segment(orbital, index)
            self.hyb.remove(orbital, seg.t_start, seg.t_end)

        return Proposal(
            MoveType.REMOVE_SEGMENT,
            self.local.occupation_ratio(orbital, seg.t_start, seg.length(beta), -1),
            self.hyb.remove_ratio(orbital, seg.t_start, seg.t_end),
            k / (beta * l_max)
            * self.schedule.ratio(MoveType.REMOVE_SEGMENT, MoveType.INSERT_SEGMENT),
            commit)

    def _propose_insert_antisegment(self) -> Optional[Proposal]:
        beta = self.beta
        orbital = self._random_orbital()
        segments = self.local.segments[orbital]
        k = len(segments)
        if k == 0 and not self.local.full[orbital]:
            return None
        t_start = self.rng.random() * beta
        if k == 0:
            l_max = beta
        else:
            host = find_containing(segments, t_start, beta)
            if host is None or segments[host].t_start == t_start:
                return None
            l_max = (segments[host].t_end - t_start) % beta
        length = self.rng.random() * l_max
        t_end = (t_start + length) % beta
        if length <= 0.0 or t_end == t_start:
            return None

        # the anti-segment creates at its end and annihilates at its start
        def commit():
            self.local.insert_antisegment(orbital, t_start, t_end)
            self.hyb.insert(orbital, t_end, t_start)

        return Proposal(
            MoveType.INSERT_ANTISEGMENT,
            self.local.occupation_ratio(orbital, t_start, length, -1),
            self.hyb.insert_ratio(orbital, t_end, t_start),
            beta * l_max / (k + 1)
            * self.schedule.ratio(MoveType.INSERT_ANTISEGMENT, MoveType.REMOVE_ANTISEGMENT),
            commit)

    def _propose_remove_antisegment(self) -> Optional[Proposal]:
        beta = self.beta
        orbital = self._random_orbital()
        segments = self.local.segments[orbital]
        k = len(segments)
        if k == 0:
            return None
        index = int(self.rng.integers(k))
        left = segments[index]
        right = segments[(index + 1) % k]
        gap = (right.t_start - left.t_end) % beta
        if k == 1:
            l_max = beta
        else:
            l_max = (right.t_end - left.t_end) % beta

        def commit():
            self.local.remove_antisegment(orbital, index)
            self.hyb.remove(orbital, right.t_start, left.t_end)

        return Proposal(
            MoveType.REMOVE_ANTISEGMENT,
            self.local.occupation_ratio(orbital, left.t_end, gap, 1),
            self.hyb.remove_ratio(orbital, right.t_start, left.t_end),
            k / (beta * l_max)
            * self.schedule.ratio(MoveType.REMOVE_ANTISEGMENT, MoveType.INSERT_ANTISEGMENT),
            commit)

    def _propose_permutation(self, move: MoveType, perm: list) -> Proposal:
        def commit():
            self.local.permute(perm)
            self.hyb.permute(perm)

        return Proposal(move, self.local.permutation_ratio(perm),
                        self.hyb.permutation_ratio(perm), 1.0, commit)

    def _propose_swap_segment(self) -> Optional[Proposal]:
        n = self.local.n_orbitals
        if n < 2:
            return None
        i, j = (int(x) for x in self.rng.choice(n, size=2, replace=False))
        perm = list(range(n))
        perm[i], perm[j] = j, i
        return self._propose_permutation(MoveType.SWAP_SEGMENT, perm)

    def _propose_global_flip(self) -> Optional[Proposal]:
        n = self.local.n_orbitals
        if n < 2:
            return None
        perm = [o ^ 1 if (o ^ 1) < n else o for o in range(n)]
        return self._propose_permutation(MoveType.GLOBAL_FLIP, perm)
