import json
import logging

import numpy as np
import pytest

from hybsim.analysis import load_results
from hybsim.params import Parameters, results_file_name
from hybsim.runner import (collect_results, run_pool, run_worker, setup_logging,
                           write_report, write_results)
from hybsim.state import MoveType


@pytest.fixture
def parms(base_parms):
    base_parms.update({"MEASURE_time": True, "TEXT_OUTPUT": True, "LOG_INTERVAL": 10,
                       "CHECKPOINT_INTERVAL": 20})
    return Parameters(base_parms)


def test_run_worker_completes_and_checkpoints(parms, tmp_path):
    result = run_worker(parms, checkpoint_dir=tmp_path)
    assert result.sweeps == parms["THERMALIZATION"] + parms["SWEEPS"]
    assert result.weight_consistent
    assert result.accumulators["Sign"].count == parms["SWEEPS"]
    assert (tmp_path / "worker_00" / "checkpoint_latest.json").exists()


def test_resume_finished_worker_does_no_more_work(parms, tmp_path):
    first = run_worker(parms, checkpoint_dir=tmp_path)
    second = run_worker(parms, checkpoint_dir=tmp_path, resume=True)
    assert second.sweeps == first.sweeps
    assert np.array_equal(second.nprop, first.nprop)


def test_seeded_workers_differ(parms):
    seeds = np.random.SeedSequence(parms["SEED"]).spawn(2)
    a = run_worker(parms, 0, 2, seeds[0])
    b = run_worker(parms, 1, 2, seeds[1])
    assert not np.array_equal(a.nacc, b.nacc)


def test_collect_results_sums_counters(parms):
    results = [run_worker(parms, w, 2, seed=w) for w in range(2)]
    pooled = collect_results(parms, results)
    assert pooled.sweeps == sum(r.sweeps for r in results)
    assert np.array_equal(pooled.nprop, results[0].nprop + results[1].nprop)
    assert pooled.bank.count == parms["SWEEPS"]


class TickingClock:
    """Clock that moves forward by ``dt`` every time it is read."""

    def __init__(self, dt: float, now: float = 0.0):
        self.dt = dt
        self.now = now

    def __call__(self) -> float:
        self.now += self.dt
        return self.now


def test_pooled_worker_stops_at_its_own_time_budget(base_parms):
    base_parms.update({"MAX_TIME": 2, "THERMALIZATION": 0, "SWEEPS": 10**9})
    result = run_worker(base_parms, worker=1, pool_size=4, seed=3,
                        clock=TickingClock(0.01))
    assert result.sweeps < 10**9
    assert 1.5 <= result.elapsed <= 2.2


def test_pooled_workers_share_the_sweep_budget(base_parms, clock):
    result = run_worker(base_parms, worker=0, pool_size=2, seed=3, clock=clock)
    assert result.sweeps == base_parms["THERMALIZATION"] + base_parms["SWEEPS"] // 2
    assert result.accumulators["Sign"].count == base_parms["SWEEPS"] // 2


def test_run_pool_in_processes(parms):
    pooled = run_pool(parms, n_workers=2)
    assert len(pooled.workers) == 2
    assert [r.worker for r in pooled.workers] == [0, 1]
    assert pooled.bank.count == parms["SWEEPS"]


def test_run_pool_rejects_empty_pool(parms):
    with pytest.raises(ValueError):
        run_pool(parms, n_workers=0)


def test_write_results_and_report(parms, tmp_path):
    pooled = run_pool(parms, n_workers=1)
    npz_path = write_results(pooled, parms, tmp_path)
    assert npz_path.name == "out.npz"
    with np.load(npz_path) as data:
        assert data["G_tau"].shape == (2, parms["N_TAU"] + 1)
        assert data["nprop"].shape == (len(MoveType),)
    summary = json.loads((tmp_path / "results.json").read_text())
    assert summary["measurements"] == parms["SWEEPS"]
    assert set(summary["acceptance"]) == {m.label for m in MoveType}
    g = np.loadtxt(tmp_path / "G_tau.dat")
    assert g.shape == (parms["N_TAU"] + 1, 3)

    report = write_report(pooled, parms, tmp_path).read_text()
    assert "CT-HYB REPORT" in report
    assert "insert anti-segment" in report


def test_setup_logging_writes_file(tmp_path):
    setup_logging(tmp_path / "logs", verbose=False)
    logging.getLogger("hybsim.test").debug("written at debug level")
    for handler in logging.getLogger("hybsim").handlers:
        handler.flush()
    text = (tmp_path / "logs" / "hybsim.log").read_text()
    assert "written at debug level" in text
    setup_logging(None)
    assert len(logging.getLogger("hybsim").handlers) == 1


def test_write_results_appends_npz_suffix(parms, tmp_path):
    parms = parms.with_overrides({"OUTPUT_FILE": "out.h5"})
    pooled = run_pool(parms, n_workers=1)
    npz_path = write_results(pooled, parms, tmp_path)
    assert npz_path.name == "out.h5.npz"
    assert npz_path.exists()
    assert not (tmp_path / "out.h5").exists()
    data = load_results(tmp_path, "out.h5")
    assert np.array_equal(data["nprop"], pooled.nprop)


def test_results_file_name():
    assert results_file_name("out.npz") == "out.npz"
    assert results_file_name("out.h5") == "out.h5.npz"
    assert results_file_name("run") == "run.npz"
