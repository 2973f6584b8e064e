"""
runner.py — Worker harness, process pool and result files
=========================================================

A worker builds one engine and calls ``do_work`` until the pooled completion
fraction, the engine fraction times the pool size, reaches one. ``run_pool``
runs independent workers in a process pool, each with its own spawned seed,
and merges their accumulators.

Output (in the output directory):
  OUTPUT_FILE (default out.npz)   all observables and acceptance counters
  results.json                    scalar summary
  G_tau.dat                       with TEXT_OUTPUT and MEASURE_time
  hybsim_report.txt               acceptance table and run summary
  checkpoints/worker_NN/          checkpoint_latest.json per worker
"""

import json
import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from .engine import HybridizationSimulation
from .local_config import LocalConfig
from .measurements import MeasurementBank
from .params import Parameters, results_file_name
from .runtime import RuntimeContext
from .state import N_MOVES, MoveType

logger = logging.getLogger("hybsim.runner")


def setup_logging(log_dir=None, verbose: bool = True) -> logging.Logger:
    """Attach a DEBUG file handler (``hybsim.log``) and an INFO console
    handler to the ``hybsim`` logger, replacing earlier handlers."""
    root = logging.getLogger("hybsim")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "hybsim.log")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(logging.DEBUG)

    # Also log to stdout
    console = logging.StreamHandler()
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(formatter)
    root.addHandler(console)
    return root


@dataclass
class WorkerResult:
    """What a finished worker hands back to the pool."""
    worker: int
    sweeps: int
    sign: float
    nacc: np.ndarray
    nprop: np.ndarray
    accumulators: dict
    elapsed: float
    weight_consistent: bool = True

    def acceptance_rate(self, move: Optional[MoveType] = None) -> float:
        nacc = self.nacc if move is None else self.nacc[move]
        nprop = self.nprop if move is None else self.nprop[move]
        total = int(np.sum(nprop))
        return float(np.sum(nacc)) / total if total > 0 else 0.0


@dataclass
class PooledResult:
    """Merged measurements and summed counters of all finished workers."""
    bank: MeasurementBank
    workers: list = field(default_factory=list)
    nacc: np.ndarray = field(default_factory=lambda: np.zeros(N_MOVES, dtype=np.int64))
    nprop: np.ndarray = field(default_factory=lambda: np.zeros(N_MOVES, dtype=np.int64))
    sweeps: int = 0

    def acceptance_rate(self, move: Optional[MoveType] = None) -> float:
        nacc = self.nacc if move is None else self.nacc[move]
        nprop = self.nprop if move is None else self.nprop[move]
        total = int(np.sum(nprop))
        return float(np.sum(nacc)) / total if total > 0 else 0.0


def pooled_fraction(sim: HybridizationSimulation) -> float:
    """Completion of the whole pool, assuming every worker progresses alike.

    The engine divides its time fraction by the pool size, so summing the
    fractions of all workers is the engine fraction times the pool size.
    """
    return sim.fraction_completed() * sim.runtime.pool_size


def _log_status(sim: HybridizationSimulation, worker: int) -> None:
    state = sim.state
    logger.info(f"Worker {worker:02d} | "
                f"Sweep {state.sweep_count:>9d} | "
                f"Done: {min(pooled_fraction(sim), 1.0):>6.1%} | "
                f"Sign: {state.sign:+.0f} | "
                f"Accept: {state.acceptance_rate():>5.1%}")
    rates = [f"{rate:.0%}" for rate in sim.acceptance_rates().values()]
    logger.debug(f"  Move rates: {' | '.join(rates)}")


# ============================================================
# Single worker
# ============================================================
def run_worker(parms, worker: int = 0, pool_size: int = 1, seed=None,
               checkpoint_dir=None, resume: bool = False,
               clock=time.monotonic) -> WorkerResult:
    """Run one engine until the pooled completion fraction reaches one.

    With ``pool_size`` workers each one stops after MAX_TIME seconds of its
    own or after its share SWEEPS / pool_size of the sampling sweeps.

    This is a module-level function so ProcessPoolExecutor can pickle it.
    """
    if not isinstance(parms, Parameters):
        parms = Parameters(parms)
    runtime = RuntimeContext(pool_size=pool_size, rank=worker, clock=clock)
    sim = HybridizationSimulation(parms, runtime=runtime, seed=seed)

    ckpt_dir = None
    if checkpoint_dir is not None:
        ckpt_dir = Path(checkpoint_dir) / f"worker_{worker:02d}"
        if resume:
            sim.load_checkpoint(ckpt_dir)

    log_interval = parms["LOG_INTERVAL"]
    ckpt_interval = parms["CHECKPOINT_INTERVAL"]
    t_start = clock()
    while pooled_fraction(sim) < 1.0:
        sim.do_work()
        sweep = sim.state.sweep_count
        if log_interval > 0 and sweep % log_interval == 0:
            _log_status(sim, worker)
        if ckpt_dir is not None and ckpt_interval > 0 and sweep % ckpt_interval == 0:
            sim.save_checkpoint(ckpt_dir)

    # Final checkpoint
    if ckpt_dir is not None:
        sim.save_checkpoint(ckpt_dir)
    consistent = sim.weight_consistent(1e-6)
    if not consistent:
        logger.warning(f"Worker {worker:02d}: tracked weight drifted from "
                       f"the recomputed weight {sim.full_weight():.6g}")
    _log_status(sim, worker)
    return WorkerResult(
        worker=worker,
        sweeps=sim.state.sweep_count,
        sign=sim.state.sign,
        nacc=sim.state.nacc.copy(),
        nprop=sim.state.nprop.copy(),
        accumulators=sim.measurements.accumulators,
        elapsed=clock() - t_start,
        weight_consistent=consistent,
    )


# ============================================================
# Worker pool
# ============================================================
def run_pool(parms, n_workers: int = 1, checkpoint_dir=None,
             resume: bool = False) -> PooledResult:
    """Run ``n_workers`` independent engines and merge their results.

    Crashed workers are logged and left out of the merged result.
    """
    if not isinstance(parms, Parameters):
        parms = Parameters(parms)
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")
    seeds = np.random.SeedSequence(parms["SEED"]).spawn(n_workers)

    if n_workers == 1:
        results = [run_worker(parms, 0, 1, seeds[0], checkpoint_dir, resume)]
        return collect_results(parms, results)

    logger.info(f"Running {n_workers} workers in parallel")
    supplied = parms.supplied()
    results = []
    futures = {}
    with ProcessPoolExecutor(max_workers=n_workers) as pool:
        for worker in range(n_workers):
            fut = pool.submit(run_worker, supplied, worker, n_workers,
                              seeds[worker], checkpoint_dir, resume)
            futures[fut] = worker

        for fut in as_completed(futures):
            worker = futures[fut]
            try:
                results.append(fut.result())
            except Exception as exc:
                logger.error(f"Worker {worker:02d} crashed: {exc}")

    if not results:
        raise RuntimeError("all workers failed")
    results.sort(key=lambda r: r.worker)
    return collect_results(parms, results)


def collect_results(parms: Parameters, results: list) -> PooledResult:
    """Merge the accumulators and sum the counters of finished workers."""
    local = LocalConfig.from_parameters(parms)
    pooled = PooledResult(bank=MeasurementBank(parms, parms["BETA"], local.u_matrix))
    for result in results:
        for name, acc in pooled.bank.accumulators.items():
            acc.merge(result.accumulators[name])
        pooled.nacc += result.nacc
        pooled.nprop += result.nprop
        pooled.sweeps += result.sweeps
        pooled.workers.append(result)
    return pooled


# ============================================================
# Output
# ============================================================
def write_results(pooled: PooledResult, parms: Parameters, output_dir) -> Path:
    """Write observables to OUTPUT_FILE and a scalar summary to results.json."""
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    observables = pooled.bank.evaluate()

    file_name = results_file_name(parms["OUTPUT_FILE"])
    if file_name != parms["OUTPUT_FILE"]:
        logger.warning(f"OUTPUT_FILE {parms['OUTPUT_FILE']} has no .npz suffix; "
                       f"writing {file_name}")
    npz_path = out_dir / file_name
    np.savez(npz_path, nacc=pooled.nacc, nprop=pooled.nprop,
             beta=parms["BETA"], **observables)

    summary = {
        "workers": len(pooled.workers),
        "sweeps": pooled.sweeps,
        "measurements": pooled.bank.count,
        "acceptance": {move.label: pooled.acceptance_rate(move) for move in MoveType},
        "weight_consistent": all(r.weight_consistent for r in pooled.workers),
    }
    if observables:
        summary["Sign"] = float(observables["Sign"])
        summary["Sign_error"] = float(observables["Sign_error"])
        summary["n"] = observables["n"].tolist()
        summary["n_error"] = observables["n_error"].tolist()
    with open(out_dir / "results.json", "w") as f:
        json.dump(summary, f, indent=2)

    if parms["TEXT_OUTPUT"] and "G_tau" in observables:
        g = observables["G_tau"]
        tau = np.linspace(0.0, parms["BETA"], g.shape[1])
        np.savetxt(out_dir / "G_tau.dat", np.column_stack([tau, g.T]))

    logger.info(f"Results written to {npz_path}")
    return npz_path


def write_report(pooled: PooledResult, parms: Parameters, output_dir) -> Path:
    """Write a summary report of the run."""
    report_path = Path(output_dir) / "hybsim_report.txt"
    observables = pooled.bank.evaluate()
    with open(report_path, "w") as f:
        f.write("=" * 60 + "\n")
        f.write(" CT-HYB REPORT\n")
        f.write("=" * 60 + "\n\n")

        f.write(f"Workers:                 {len(pooled.workers)}\n")
        f.write(f"Total sweeps:            {pooled.sweeps}\n")
        f.write(f"Measurements:            {pooled.bank.count}\n")
        f.write(f"Updates proposed:        {int(pooled.nprop.sum())}\n")
        f.write(f"Updates accepted:        {int(pooled.nacc.sum())}\n")
        f.write(f"Overall acceptance rate: {pooled.acceptance_rate():.1%}\n")
        if observables:
            f.write(f"Average sign:            {float(observables['Sign']):.6f}"
                    f" +/- {float(observables['Sign_error']):.6f}\n")
        f.write("\n")

        f.write("Per-update acceptance rates:\n")
        f.write("-" * 40 + "\n")
        for move in MoveType:
            f.write(f"  {move.label:<22s} {pooled.acceptance_rate(move):>6.1%} "
                    f"({pooled.nacc[move]}/{pooled.nprop[move]})\n")

        if observables:
            f.write("\nDensities:\n")
            for o, (n, err) in enumerate(zip(observables["n"], observables["n_error"])):
                f.write(f"  Orbital {o:02d}: n = {n:.6f} +/- {err:.6f}\n")

        f.write("\nWorkers:\n")
        for r in pooled.workers:
            f.write(f"  Worker {r.worker:02d}: {r.sweeps} sweeps in {r.elapsed:.1f}s, "
                    f"acceptance {r.acceptance_rate():.1%}\n")

    logger.info(f"Report written to {report_path}")
    return report_path
