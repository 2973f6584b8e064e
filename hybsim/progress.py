"""
progress.py — Thermalization and completion bookkeeping
=======================================================

The controller only reports; the harness decides when to stop calling the
engine. Completion is the larger of the sweep fraction and the wall-clock
fraction, the latter divided by the worker-pool size because every worker
runs for up to MAX_TIME on its own while results are pooled.
"""

import math
import time
from enum import IntEnum
from typing import Callable


class Phase(IntEnum):
    NOT_STARTED = 0
    THERMALIZING = 1
    SAMPLING = 2
    DONE = 3


class ProgressController:
    """Tracks the phase of one worker and its completion fraction."""

    def __init__(self, thermalization_sweeps: int, total_sweeps: int,
                 max_time: float, pool_size: int = 1,
                 clock: Callable[[], float] = time.monotonic):
        self.thermalization_sweeps = int(thermalization_sweeps)
        self.total_sweeps = int(total_sweeps)
        self.max_time = float(max_time)
        self.pool_size = int(pool_size)
        self.clock = clock
        self.start_time = clock()
        self.end_time = self.start_time + self.max_time
        self.phase = Phase.NOT_STARTED

    def is_thermalized(self, sweep_count: int) -> bool:
        return sweep_count >= self.thermalization_sweeps

    def work_fraction(self, sweep_count: int) -> float:
        done = sweep_count - self.thermalization_sweeps
        if self.total_sweeps == 0:
            return math.inf if done >= 0 else -math.inf
        return done / self.total_sweeps

    def time_fraction(self) -> float:
        elapsed = self.clock() - self.start_time
        budget = self.end_time - self.start_time
        if budget <= 0:
            return math.inf
        return elapsed / budget / self.pool_size

    def fraction_completed(self, sweep_count: int) -> float:
        if not self.is_thermalized(sweep_count):
            return 0.0
        return max(self.work_fraction(sweep_count), self.time_fraction())

    def advance(self, sweep_count: int) -> Phase:
        """Move the phase forward after a unit of work; never backwards."""
        if not self.is_thermalized(sweep_count):
            target = Phase.THERMALIZING
        elif self.fraction_completed(sweep_count) >= 1.0:
            target = Phase.DONE
        else:
            target = Phase.SAMPLING
        if target > self.phase:
            self.phase = target
        return self.phase

    def elapsed(self) -> float:
        return self.clock() - self.start_time
