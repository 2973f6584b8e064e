import numpy as np
import pytest

from conftest import add_segment, make_configs
from hybsim.measurements import Accumulator, MeasurementBank
from hybsim.params import ConfigurationError, Parameters


def _bank(base_parms, **flags):
    base_parms.update(flags)
    parms = Parameters(base_parms)
    local, hyb = make_configs(beta=parms["BETA"], n_tau=parms["N_TAU"])
    return MeasurementBank(parms, parms["BETA"], local.u_matrix), local, hyb


def test_accumulator_mean_error_and_merge():
    a = Accumulator()
    for x in [1.0, 2.0, 3.0]:
        a.add(x)
    assert a.mean() == pytest.approx(2.0)
    assert a.error() == pytest.approx(np.std([1, 2, 3]) / np.sqrt(2))
    b = Accumulator()
    b.add(6.0)
    a.merge(b)
    assert a.count == 4
    assert a.mean() == pytest.approx(3.0)
    with pytest.raises(ValueError):
        a.merge(Accumulator((2,)))


def test_evaluate_before_any_measurement_is_empty(base_parms):
    bank, _, _ = _bank(base_parms)
    assert bank.evaluate() == {}


def test_empty_configuration(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_time=True)
    bank.measure(local, hyb, 1.0)
    out = bank.evaluate()
    assert out["Sign"] == 1.0
    assert np.all(out["n"] == 0.0)
    assert np.all(out["order_histogram"][:, 0] == 1.0)
    assert out["G_tau"].shape == (2, base_parms["N_TAU"] + 1)
    assert np.all(out["G_tau"] == 0.0)


def test_signed_observables_are_reweighted(base_parms):
    bank, local, hyb = _bank(base_parms)
    local.flip_zero_state(0)
    bank.measure(local, hyb, 1.0)
    bank.measure(local, hyb, -1.0)
    bank.measure(local, hyb, 1.0)
    out = bank.evaluate()
    assert out["Sign"] == pytest.approx(1.0 / 3.0)
    # <n s> / <s> = (1 - 1 + 1) / 3 / (1/3)
    assert out["n"][0] == pytest.approx(1.0)


def test_green_function_channels(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_time=True, MEASURE_freq=True,
                             N_MATSUBARA=8, MEASURE_legendre=True, N_LEGENDRE=6)
    add_segment(local, hyb, 0, 1.0, 4.0)
    add_segment(local, hyb, 0, 7.0, 9.0)
    bank.measure(local, hyb, 1.0)
    out = bank.evaluate()
    assert out["G_omega"].shape == (2, 8)
    assert out["G_legendre"].shape == (2, 6)
    assert np.any(out["G_tau"][0] != 0.0)
    assert np.all(out["G_tau"][1] == 0.0)
    # each of the k^2 = 4 entries of M lands in exactly one bin
    dtau = base_parms["BETA"] / base_parms["N_TAU"]
    g = out["G_tau"][0].copy()
    g[0] /= 2.0
    g[-1] /= 2.0
    m = hyb.matrices[0].inverse
    assert abs(g.sum() * base_parms["BETA"] * dtau) <= np.abs(m).sum() + 1e-12
    assert np.all(np.isfinite(out["G_legendre"]))


def test_density_correlators(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_nn=True, MEASURE_nnt=True, N_nn=20,
                             MEASURE_nnw=True, N_W=3)
    add_segment(local, hyb, 0, 1.0, 6.0)
    add_segment(local, hyb, 1, 4.0, 8.0)
    bank.measure(local, hyb, 1.0)
    out = bank.evaluate()
    nn = out["nn"]
    assert nn[0, 0] == pytest.approx(0.5)
    assert nn[1, 1] == pytest.approx(0.4)
    assert nn[0, 1] == pytest.approx(0.2)
    assert out["nnt"].shape == (2, 2, 21)
    # tau = 0 and tau = beta agree and equal the static value on the grid
    assert np.allclose(out["nnt"][:, :, 0], out["nnt"][:, :, -1])
    assert out["nnt"][0, 0, 0] == pytest.approx(0.5)
    # the zero bosonic frequency carries L_i L_j / beta
    assert out["nnw"][0, 1, 0] == pytest.approx(5.0 * 4.0 / 10.0)


def test_sector_statistics_sum_to_one(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_sector_statistics=True)
    add_segment(local, hyb, 0, 1.0, 6.0)
    add_segment(local, hyb, 1, 8.0, 2.0)
    bank.measure(local, hyb, 1.0)
    stats = bank.evaluate()["sector_statistics"]
    assert stats.shape == (4,)
    assert stats.sum() == pytest.approx(1.0)
    # both occupied on [1, 2)
    assert stats[3] == pytest.approx(0.1)


def test_two_particle_shapes(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_g2w=True, MEASURE_h2w=True,
                             N_w2=4, N_W=2)
    add_segment(local, hyb, 0, 1.0, 6.0)
    add_segment(local, hyb, 1, 3.0, 8.0)
    bank.measure(local, hyb, 1.0)
    out = bank.evaluate()
    assert out["g2w"].shape == (2, 2, 4, 4, 2)
    assert out["h2w"].shape == (2, 2, 4, 4, 2)
    assert np.all(np.isfinite(out["g2w"]))
    assert np.iscomplexobj(out["h2w"])


def test_non_positive_grid_is_rejected(base_parms):
    with pytest.raises(ConfigurationError, match="N_MATSUBARA"):
        _bank(base_parms, MEASURE_freq=True, N_MATSUBARA=0)


def test_merge_banks(base_parms):
    first, local, hyb = _bank(dict(base_parms))
    second, _, _ = _bank(dict(base_parms))
    first.measure(local, hyb, 1.0)
    second.measure(local, hyb, 1.0)
    second.measure(local, hyb, 1.0)
    first.merge(second)
    assert first.count == 3


def _trapezoid_weights(n_points):
    w = np.ones(n_points)
    w[0] = w[-1] = 0.5
    return w


@pytest.fixture
def measured(base_parms):
    bank, local, hyb = _bank(base_parms, MEASURE_time=True, MEASURE_freq=True,
                             N_MATSUBARA=4, MEASURE_legendre=True, N_LEGENDRE=2,
                             MEASURE_g2w=True, N_w2=4, N_W=2)
    add_segment(local, hyb, 0, 1.0, 4.0)
    add_segment(local, hyb, 0, 7.0, 9.0)
    add_segment(local, hyb, 1, 3.0, 6.0)
    add_segment(local, hyb, 1, 8.5, 1.5)
    bank.measure(local, hyb, 1.0)
    return bank.evaluate(), hyb


def test_green_omega_matches_transform_of_green_tau(base_parms, measured):
    out, hyb = measured
    beta = base_parms["BETA"]
    n_tau = base_parms["N_TAU"]
    dtau = beta / n_tau
    tau = np.linspace(0.0, beta, n_tau + 1)
    wn = (2 * np.arange(4) + 1) * np.pi / beta
    kernel = np.exp(1j * np.outer(tau, wn)) * (_trapezoid_weights(n_tau + 1) * dtau)[:, None]
    for o in range(2):
        transformed = out["G_tau"][o] @ kernel
        # binning moves each time difference by at most dtau / 2
        bound = np.abs(hyb.matrices[o].inverse).sum() / beta * wn * dtau / 2
        assert np.all(np.abs(transformed - out["G_omega"][o]) <= bound + 1e-12)
        assert np.any(np.abs(out["G_omega"][o]) > 0.0)


def test_lowest_legendre_coefficient_is_integral_of_green_tau(base_parms, measured):
    out, _ = measured
    beta = base_parms["BETA"]
    n_tau = base_parms["N_TAU"]
    dtau = beta / n_tau
    integral = out["G_tau"] @ (_trapezoid_weights(n_tau + 1) * dtau)
    assert np.allclose(out["G_legendre"][:, 0], integral, atol=1e-12)


def test_two_particle_factorises_between_orbitals(base_parms, measured):
    out, _ = measured
    beta = base_parms["BETA"]
    g = out["G_omega"]
    g2 = out["g2w"]
    half = 2
    # auxiliary index i sits at the fermionic frequency of index i - N_w2 / 2
    for i1 in (2, 3):
        for i2 in (2, 3):
            expected = beta * g[0, i1 - half] * g[1, i2 - half]
            assert g2[0, 1, i1, i2, 0] == pytest.approx(expected, abs=1e-10)
    # direct and exchange terms cancel on the diagonal of one orbital
    for i in range(4):
        assert g2[0, 0, i, i, 0] == pytest.approx(0.0, abs=1e-10)
        assert g2[1, 1, i, i, 0] == pytest.approx(0.0, abs=1e-10)
