import json

import numpy as np
import pytest

from hybsim.engine import CheckpointError, HybridizationSimulation
from hybsim.params import ConfigurationError
from hybsim.progress import Phase
from hybsim.runtime import RuntimeContext
from hybsim.state import MoveType


def _sim(parms, clock=None, pool_size=1, **overrides):
    parms = dict(parms, **overrides)
    if clock is None:
        runtime = RuntimeContext(pool_size=pool_size)
    else:
        runtime = RuntimeContext(pool_size=pool_size, clock=clock)
    return HybridizationSimulation(parms, runtime=runtime)


@pytest.mark.parametrize("overrides, message", [
    ({"MEASURE_freq": True}, "N_MATSUBARA"),
    ({"COMPUTE_VERTEX": True, "MEASURE_freq": True, "N_MATSUBARA": 10}, "two-particle"),
    ({"MEASURE_g2w": True, "N_w2": 3, "N_W": 2}, "N_w2 must be even"),
])
def test_invalid_configuration_fails_construction(base_parms, overrides, message):
    with pytest.raises(ConfigurationError, match=message):
        _sim(base_parms, **overrides)


def test_two_particle_configuration_constructs(base_parms):
    sim = _sim(base_parms, MEASURE_g2w=True, N_w2=4, N_W=2)
    sim.do_work()
    assert sim.state.sweep_count == 1


def test_fraction_zero_until_thermalized(base_parms, clock):
    sim = _sim(base_parms, clock=clock, THERMALIZATION=8)
    for _ in range(8):
        assert sim.fraction_completed() == 0.0
        assert not sim.is_thermalized()
        clock.advance(100.0)
        sim.do_work()
    assert sim.is_thermalized()
    assert sim.fraction_completed() > 0.0


def test_measurements_only_after_thermalization(base_parms):
    sim = _sim(base_parms, THERMALIZATION=5)
    for _ in range(5):
        sim.do_work()
    assert sim.measurements.count == 0
    sim.do_work()
    assert sim.measurements.count == 1


def test_run_to_completion(base_parms):
    sim = _sim(base_parms)
    previous = 0
    while sim.fraction_completed() < 1.0:
        sim.do_work()
        assert sim.state.sweep_count == previous + 1
        previous = sim.state.sweep_count
    assert sim.state.sweep_count == base_parms["THERMALIZATION"] + base_parms["SWEEPS"]
    assert sim.phase == Phase.DONE
    assert int(sim.state.nprop.sum()) == sim.state.sweep_count * base_parms["N_MEAS"]
    assert sim.measurements.count == base_parms["SWEEPS"]


def test_pool_size_halves_time_fraction(base_parms, clock):
    single = _sim(base_parms, clock=clock, pool_size=1, THERMALIZATION=0, SWEEPS=10**9)
    double = _sim(base_parms, clock=clock, pool_size=2, THERMALIZATION=0, SWEEPS=10**9)
    clock.advance(900.0)
    assert single.fraction_completed() == pytest.approx(0.25)
    assert double.fraction_completed() == pytest.approx(0.125)


def test_time_budget_ends_run(base_parms, clock):
    sim = _sim(base_parms, clock=clock, SWEEPS=10**9)
    for _ in range(base_parms["THERMALIZATION"]):
        sim.do_work()
    clock.advance(base_parms["MAX_TIME"])
    assert sim.fraction_completed() >= 1.0


def test_weight_stays_consistent(base_parms):
    sim = _sim(base_parms, N_ORBITALS=4, U=1.0, SPINFLIP=True, GLOBALFLIP=True,
               N_MEAS=5, SWEEPS=300)
    for _ in range(300):
        sim.do_work()
        assert sim.weight_consistent(1e-7)
    assert sim.state.nprop[MoveType.GLOBAL_FLIP] > 0
    assert sim.state.nprop[MoveType.SWAP_SEGMENT] > 0


def test_disabled_moves_stay_unproposed(base_parms):
    sim = _sim(base_parms, SWEEPS=200)
    for _ in range(200):
        sim.do_work()
    assert sim.state.nprop[MoveType.SWAP_SEGMENT] == 0
    assert sim.state.nprop[MoveType.GLOBAL_FLIP] == 0
    assert np.all(sim.state.nacc <= sim.state.nprop)


def test_same_seed_same_chain(base_parms):
    a = _sim(base_parms)
    b = _sim(base_parms)
    for _ in range(20):
        a.do_work()
        b.do_work()
    assert a.local.segments == b.local.segments
    assert np.array_equal(a.state.nacc, b.state.nacc)


def test_acceptance_report_lists_every_move(base_parms):
    sim = _sim(base_parms)
    sim.do_work()
    report = sim.acceptance_report()
    for move in MoveType:
        assert move.label in report
    assert set(sim.acceptance_rates()) == {m.label for m in MoveType}


def test_str_shows_both_configurations(base_parms):
    sim = _sim(base_parms)
    text = str(sim)
    assert text.startswith("-" * 72)
    assert "orbital 0:" in text
    assert "operator pairs" in text


def test_banner_and_start_line(base_parms, caplog):
    with caplog.at_level("INFO", logger="hybsim"):
        _sim(base_parms, VERBOSE=True)
    assert "Hybridization Expansion Simulation CT-HYB" in caplog.text
    assert "process 0 of total: 1 starting simulation" in caplog.text


def test_checkpoint_round_trip(base_parms, tmp_path):
    a = _sim(base_parms, MEASURE_time=True)
    for _ in range(15):
        a.do_work()
    a.save_checkpoint(tmp_path)

    b = _sim(base_parms, MEASURE_time=True)
    assert b.load_checkpoint(tmp_path)
    assert b.local.segments == a.local.segments
    assert b.state.sweep_count == a.state.sweep_count
    assert b.measurements.count == a.measurements.count
    assert b.weight_consistent(1e-7)

    a.do_work()
    b.do_work()
    assert b.local.segments == a.local.segments
    assert np.array_equal(b.state.nprop, a.state.nprop)
    assert np.allclose(b.measurements.accumulators["G_tau"].sum,
                       a.measurements.accumulators["G_tau"].sum)


def test_load_checkpoint_missing(base_parms, tmp_path):
    assert not _sim(base_parms).load_checkpoint(tmp_path)


def test_load_checkpoint_corrupt(base_parms, tmp_path):
    (tmp_path / "checkpoint_latest.json").write_text("{not json")
    with pytest.raises(CheckpointError):
        _sim(base_parms).load_checkpoint(tmp_path)


def test_load_checkpoint_mismatched_orbitals(base_parms, tmp_path):
    path = _sim(base_parms).save_checkpoint(tmp_path)
    data = json.loads(path.read_text())
    data["n_orbitals"] = 4
    path.write_text(json.dumps(data))
    with pytest.raises(CheckpointError, match="orbitals"):
        _sim(base_parms).load_checkpoint(tmp_path)


def _corrupt_checkpoint(parms, tmp_path, edit):
    source = _sim(parms, MEASURE_time=True)
    for _ in range(15):
        source.do_work()
    path = source.save_checkpoint(tmp_path)
    data = json.loads(path.read_text())
    edit(data)
    path.write_text(json.dumps(data))


def _snapshot(sim):
    return (
        [list(segs) for segs in sim.local.segments],
        list(sim.local.full),
        [m.determinant for m in sim.hyb.matrices],
        sim.state.sweep_count,
        sim.state.nprop.copy(),
        sim.measurements.count,
        sim.rng.bit_generator.state,
    )


def _assert_untouched(sim, before):
    segments, full, dets, sweeps, nprop, count, rng_state = before
    assert sim.local.segments == segments
    assert sim.local.full == full
    assert [m.determinant for m in sim.hyb.matrices] == dets
    assert sim.state.sweep_count == sweeps
    assert np.array_equal(sim.state.nprop, nprop)
    assert sim.measurements.count == count
    assert sim.rng.bit_generator.state == rng_state
    assert sim.weight_consistent(1e-7)


def test_singular_checkpoint_leaves_engine_untouched(base_parms, tmp_path):
    def duplicate_segments(data):
        data["segments"][0] = [[1.0, 2.0], [1.0, 2.0]]

    _corrupt_checkpoint(base_parms, tmp_path, duplicate_segments)
    sim = _sim(base_parms, MEASURE_time=True)
    for _ in range(8):
        sim.do_work()
    before = _snapshot(sim)
    with pytest.raises(CheckpointError, match="invalid"):
        sim.load_checkpoint(tmp_path)
    _assert_untouched(sim, before)


def test_malformed_accumulator_leaves_engine_untouched(base_parms, tmp_path):
    def truncate_green_function(data):
        entry = data["measurements"]["G_tau"]
        entry["sum"]["real"] = entry["sum"]["real"][:1]

    _corrupt_checkpoint(base_parms, tmp_path, truncate_green_function)
    sim = _sim(base_parms, MEASURE_time=True)
    for _ in range(8):
        sim.do_work()
    before = _snapshot(sim)
    with pytest.raises(CheckpointError, match="malformed"):
        sim.load_checkpoint(tmp_path)
    _assert_untouched(sim, before)
