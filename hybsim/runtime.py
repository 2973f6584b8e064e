"""
runtime.py — Process-level facts the engine reads once at construction
======================================================================

Wall clock, worker-pool size and rank. The pool size comes from MPI when an
MPI runtime has been initialised (mpi4py), and is 1 otherwise. Tests inject
a fixed pool size and a fake clock.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("hybsim.runtime")


def discover_pool() -> tuple[int, int]:
    """Return ``(pool_size, rank)`` of this process.

    Never initialises MPI itself; a missing or uninitialised runtime, or a
    failing query, yields a pool of one.
    """
    try:
        import mpi4py
        mpi4py.rc.initialize = False
        mpi4py.rc.finalize = False
        from mpi4py import MPI
    except ImportError:
        return 1, 0
    try:
        if not MPI.Is_initialized() or MPI.Is_finalized():
            return 1, 0
        comm = MPI.COMM_WORLD
        return max(1, comm.Get_size()), comm.Get_rank()
    except Exception as exc:
        logger.warning(f"MPI pool size query failed ({exc}); assuming a single process")
        return 1, 0


@dataclass(frozen=True)
class RuntimeContext:
    """Immutable per-process runtime information."""
    pool_size: int = 1
    rank: int = 0
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self):
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {self.pool_size}")
        if not 0 <= self.rank < self.pool_size:
            raise ValueError(f"rank {self.rank} outside pool of {self.pool_size}")

    @classmethod
    def discover(cls, clock: Callable[[], float] = time.monotonic) -> "RuntimeContext":
        size, rank = discover_pool()
        return cls(pool_size=size, rank=rank, clock=clock)
