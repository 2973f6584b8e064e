import sys
from pathlib import Path

# Ensure package import for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from hybsim.hybridization import HybConfig, HybridizationFunction
from hybsim.local_config import LocalConfig, build_u_matrix
from hybsim.segments import Segment


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> None:
        self.now += dt


@pytest.fixture
def clock():
    return FakeClock(100.0)


@pytest.fixture
def base_parms():
    return {
        "BETA": 10.0,
        "N_ORBITALS": 2,
        "U": 2.0,
        "MU": 1.0,
        "N_TAU": 50,
        "THERMALIZATION": 5,
        "SWEEPS": 40,
        "N_MEAS": 10,
        "MAX_TIME": 3600,
        "SEED": 7,
        "VERBOSE": False,
    }


def make_configs(beta=10.0, n_orbitals=2, U=2.0, mu=1.0, n_tau=200,
                 couplings=(0.5, 0.5), energies=(-1.0, 1.0)):
    local = LocalConfig(beta, [mu] * n_orbitals, build_u_matrix(n_orbitals, U))
    delta = HybridizationFunction.from_bath(beta, n_tau, n_orbitals, energies, couplings)
    return local, HybConfig(delta)


def add_segment(local, hyb, orbital, t_start, t_end):
    local.insert_segment(orbital, Segment(t_start, t_end))
    hyb.insert(orbital, t_start, t_end)
