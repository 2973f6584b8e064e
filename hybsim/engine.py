"""
engine.py — Hybridization expansion simulation (one worker)
===========================================================

Owns the segment configuration, the hybridization determinants, the random
stream, the Markov-chain state, the update kernel, the measurements and the
progress controller of a single worker.

Unit of work (``do_work``):
  1. N_MEAS kernel invocations
  2. One measurement, if thermalized
  3. sweep_count += 1

Usage:
    sim = HybridizationSimulation(load_parameters("params.yaml"))
    while sim.fraction_completed() < 1.0:
        sim.do_work()
    results = sim.measurements.evaluate()
"""

import json
import logging
import math
from pathlib import Path
from typing import Optional

import numpy as np

from .hybridization import HybConfig, HybMatrix, HybridizationFunction
from .local_config import LocalConfig
from .measurements import Accumulator, MeasurementBank
from .params import ConfigurationError, Parameters, sanity_check, show_info
from .progress import Phase, ProgressController
from .runtime import RuntimeContext
from .segments import Segment
from .state import MoveType, SimulationState
from .updates import MoveSchedule, UpdateKernel

logger = logging.getLogger("hybsim.engine")

BANNER = [
    "Hybridization Expansion Simulation CT-HYB",
    "Segment picture, density-density interactions",
    "Refer to the documentation for more information.",
]

CHECKPOINT_NAME = "checkpoint_latest.json"


class CheckpointError(RuntimeError):
    """Checkpoint file missing, unreadable or inconsistent with the parameters."""


def _encode_array(a: np.ndarray) -> dict:
    a = np.asarray(a)
    if np.iscomplexobj(a):
        return {"real": a.real.tolist(), "imag": a.imag.tolist()}
    return {"real": a.tolist()}


def _decode_array(d: dict) -> np.ndarray:
    a = np.asarray(d["real"], dtype=float)
    if "imag" in d:
        a = a + 1j * np.asarray(d["imag"], dtype=float)
    return a


# ============================================================
# Engine
# ============================================================
class HybridizationSimulation:
    """Markov-chain engine of one worker."""

    def __init__(self, parms, runtime: Optional[RuntimeContext] = None,
                 seed=None):
        if not isinstance(parms, Parameters):
            parms = Parameters(parms)
        sanity_check(parms)
        self.parms = parms
        self.runtime = runtime if runtime is not None else RuntimeContext.discover()
        self.verbose = parms["VERBOSE"]
        show_info(parms, self.runtime.rank)

        self.beta = parms["BETA"]
        self.n_meas = parms["N_MEAS"]
        self.local = LocalConfig.from_parameters(parms)
        self.hyb = HybConfig(HybridizationFunction.from_parameters(parms))
        if self.hyb.n_orbitals != self.local.n_orbitals:
            raise ConfigurationError(
                f"hybridization function has {self.hyb.n_orbitals} orbitals, "
                f"N_ORBITALS is {self.local.n_orbitals}")

        self.rng = np.random.default_rng(parms["SEED"] if seed is None else seed)
        self.state = SimulationState()
        self.schedule = MoveSchedule.from_parameters(parms)
        self.kernel = UpdateKernel(self.local, self.hyb, self.schedule, self.rng)
        self.measurements = MeasurementBank(parms, self.beta, self.local.u_matrix)
        self.progress = ProgressController(
            parms["THERMALIZATION"], parms["SWEEPS"], parms["MAX_TIME"],
            pool_size=self.runtime.pool_size, clock=self.runtime.clock)

        if self.runtime.rank == 0 and self.verbose:
            for line in BANNER:
                logger.info(line)
        logger.info(f"process {self.runtime.rank} of total: "
                    f"{self.runtime.pool_size} starting simulation")

    # --------------------------------------------------------
    # Work
    # --------------------------------------------------------
    def update(self) -> int:
        """N_MEAS kernel invocations; returns how many were accepted."""
        accepted = 0
        for _ in range(self.n_meas):
            accepted += self.kernel.step(self.state)
        return accepted

    def measure(self) -> None:
        self.measurements.measure(self.local, self.hyb, self.state.sign)

    def do_work(self) -> Phase:
        self.update()
        if self.is_thermalized():
            self.measure()
        self.state.sweep_count += 1
        return self.progress.advance(self.state.sweep_count)

    def is_thermalized(self) -> bool:
        return self.progress.is_thermalized(self.state.sweep_count)

    def fraction_completed(self) -> float:
        return self.progress.fraction_completed(self.state.sweep_count)

    @property
    def phase(self) -> Phase:
        return self.progress.phase

    # --------------------------------------------------------
    # Diagnostics
    # --------------------------------------------------------
    def full_weight(self) -> float:
        """Configuration weight recomputed from scratch (debugging only)."""
        return self.local.full_weight() * self.hyb.full_weight()

    def weight_consistent(self, tol: float = 1e-8) -> bool:
        """Tracked log|W| and sign agree with a from-scratch evaluation."""
        w = self.full_weight()
        if w == 0.0 or not math.isfinite(w):
            return False
        if math.copysign(1.0, w) != self.state.sign:
            return False
        return abs(math.log(abs(w)) - self.state.log_weight) <= tol * max(1.0, abs(self.state.log_weight))

    def acceptance_rates(self) -> dict:
        return {move.label: self.state.acceptance_rate(move) for move in MoveType}

    def acceptance_report(self) -> str:
        lines = [f"{'update':<22s}{'proposed':>12s}{'accepted':>12s}{'rate':>9s}"]
        for move in MoveType:
            lines.append(f"{move.label:<22s}{self.state.nprop[move]:>12d}"
                         f"{self.state.nacc[move]:>12d}"
                         f"{self.state.acceptance_rate(move):>9.1%}")
        lines.append(f"{'total':<22s}{int(self.state.nprop.sum()):>12d}"
                     f"{int(self.state.nacc.sum()):>12d}"
                     f"{self.state.acceptance_rate():>9.1%}")
        return "\n".join(lines)

    def __str__(self) -> str:
        sep = "-" * 72
        return "\n".join([sep, str(self.local), sep, str(self.hyb), sep])

    # --------------------------------------------------------
    # Checkpointing
    # --------------------------------------------------------
    def checkpoint_dict(self) -> dict:
        return {
            "n_orbitals": self.local.n_orbitals,
            "beta": self.beta,
            "sweep_count": self.state.sweep_count,
            "sign": self.state.sign,
            "log_weight": self.state.log_weight,
            "nacc": self.state.nacc.tolist(),
            "nprop": self.state.nprop.tolist(),
            "phase": int(self.progress.phase),
            "segments": [[[s.t_start, s.t_end] for s in segs]
                         for segs in self.local.segments],
            "full": list(self.local.full),
            "rng_state": self.rng.bit_generator.state,
            "measurements": {
                name: {"count": acc.count, "sum": _encode_array(acc.sum),
                       "sum2": _encode_array(acc.sum2)}
                for name, acc in self.measurements.accumulators.items()
            },
        }

    def save_checkpoint(self, directory) -> Path:
        ckpt_dir = Path(directory)
        ckpt_dir.mkdir(parents=True, exist_ok=True)
        path = ckpt_dir / CHECKPOINT_NAME
        with open(path, "w") as f:
            json.dump(self.checkpoint_dict(), f, indent=2)
        logger.info(f"Checkpoint saved: sweep {self.state.sweep_count}")
        return path

    def load_checkpoint(self, directory) -> bool:
        """Restore from ``directory``; returns False if there is no checkpoint."""
        path = Path(directory) / CHECKPOINT_NAME
        if not path.exists():
            logger.info("No checkpoint found, starting fresh")
            return False
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise CheckpointError(f"cannot read checkpoint {path}: {exc}") from exc
        try:
            self._restore(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"checkpoint {path} is malformed: {exc}") from exc
        logger.info(f"Resumed from checkpoint: sweep {self.state.sweep_count}")
        return True

    def _restore(self, data: dict) -> None:
        """Decode everything first and assign only once nothing can fail."""
        if data["n_orbitals"] != self.local.n_orbitals or data["beta"] != self.beta:
            raise CheckpointError(
                f"checkpoint was written for {data['n_orbitals']} orbitals at "
                f"beta={data['beta']}, parameters give {self.local.n_orbitals} "
                f"at beta={self.beta}")
        if set(data["measurements"]) != set(self.measurements.accumulators):
            raise CheckpointError("checkpoint measurements do not match the enabled ones")
        if (len(data["segments"]) != self.local.n_orbitals
                or len(data["full"]) != self.local.n_orbitals):
            raise CheckpointError("checkpoint segments do not match the orbital count")

        segments = [[Segment(s, e) for s, e in segs] for segs in data["segments"]]
        full = [bool(x) for x in data["full"]]
        matrices = []
        for o, segs in enumerate(segments):
            m = HybMatrix(o, self.hyb.delta)
            try:
                m.set_operators([s.t_start for s in segs], [s.t_end for s in segs])
            except np.linalg.LinAlgError as exc:
                raise CheckpointError(f"checkpoint configuration is invalid: {exc}") from exc
            matrices.append(m)

        nacc = np.asarray(data["nacc"], dtype=np.int64)
        nprop = np.asarray(data["nprop"], dtype=np.int64)
        if nacc.shape != self.state.nacc.shape or nprop.shape != self.state.nprop.shape:
            raise CheckpointError("checkpoint acceptance counters have the wrong length")
        phase = Phase(data["phase"])
        sweep_count = int(data["sweep_count"])
        sign = float(data["sign"])
        log_weight = float(data["log_weight"])
        bit_generator = type(self.rng.bit_generator)()
        bit_generator.state = data["rng_state"]

        accumulators = {}
        for name, entry in data["measurements"].items():
            acc = self.measurements.accumulators[name]
            restored = Accumulator(acc.sum.shape, acc.sum.dtype)
            restored.sum = _decode_array(entry["sum"]).astype(acc.sum.dtype).reshape(acc.sum.shape)
            restored.sum2 = _decode_array(entry["sum2"]).reshape(acc.sum2.shape)
            restored.count = int(entry["count"])
            accumulators[name] = restored

        self.local.segments = segments
        self.local.full = full
        self.hyb.matrices = matrices
        self.state.sweep_count = sweep_count
        self.state.sign = sign
        self.state.log_weight = log_weight
        self.state.nacc = nacc
        self.state.nprop = nprop
        self.progress.phase = phase
        self.rng.bit_generator.state = bit_generator.state
        self.measurements.accumulators.update(accumulators)
