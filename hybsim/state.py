"""Mutable Markov-chain state owned by the simulation engine."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

import numpy as np


class MoveType(IntEnum):
    """The seven update types, by their index in the acceptance counters."""
    CHANGE_ZERO_STATE = 0
    INSERT_SEGMENT = 1
    REMOVE_SEGMENT = 2
    INSERT_ANTISEGMENT = 3
    REMOVE_ANTISEGMENT = 4
    SWAP_SEGMENT = 5
    GLOBAL_FLIP = 6

    @property
    def label(self) -> str:
        return UPDATE_LABELS[self]


UPDATE_LABELS = {
    MoveType.CHANGE_ZERO_STATE: "change zero state",
    MoveType.INSERT_SEGMENT: "insert segment",
    MoveType.REMOVE_SEGMENT: "remove segment",
    MoveType.INSERT_ANTISEGMENT: "insert anti-segment",
    MoveType.REMOVE_ANTISEGMENT: "remove anti-segment",
    MoveType.SWAP_SEGMENT: "swap segment",
    MoveType.GLOBAL_FLIP: "global flip",
}

N_MOVES = len(MoveType)


@dataclass
class SimulationState:
    """Sweep counter, running sign, tracked log|W| and acceptance counters."""
    sweep_count: int = 0
    sign: float = 1.0
    log_weight: float = 0.0
    nacc: np.ndarray = field(default_factory=lambda: np.zeros(N_MOVES, dtype=np.int64))
    nprop: np.ndarray = field(default_factory=lambda: np.zeros(N_MOVES, dtype=np.int64))

    def acceptance_rate(self, move: Optional[MoveType] = None) -> float:
        if move is not None:
            prop = self.nprop[move]
            return float(self.nacc[move]) / prop if prop > 0 else 0.0
        total = int(self.nprop.sum())
        if total == 0:
            return 0.0
        return float(self.nacc.sum()) / total
