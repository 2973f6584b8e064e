"""
params.py — Input parameters of the hybridization expansion simulation
=====================================================================

Parameter table (name, type, default, description), YAML loading, and the
sanity check that runs before any simulation state is created.

Usage:
    parms = load_parameters("params.yaml", overrides=["SWEEPS=10000"])
    sanity_check(parms)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

logger = logging.getLogger("hybsim.params")


class ConfigurationError(ValueError):
    """Inconsistent or incomplete simulation parameters."""


# ============================================================
# Parameter table
# ============================================================
@dataclass(frozen=True)
class ParameterDefinition:
    name: str
    type: type
    default: Any = None
    description: str = ""
    required: bool = False


def _define(name, type_, default=None, description="", required=False):
    return ParameterDefinition(name, type_, default, description, required)


PARAMETER_DEFINITIONS = {d.name: d for d in [
    _define("BETA", float, description="inverse temperature", required=True),
    _define("BATH_COUPLINGS", list, [0.5, 0.5],
            "hybridization strengths of the default bath levels"),
    _define("BATH_ENERGIES", list, [-1.0, 1.0],
            "energies of the default bath levels"),
    _define("CHECKPOINT_INTERVAL", int, 0,
            "sweeps between checkpoints (0 = only at the end)"),
    _define("COMPUTE_VERTEX", bool, False,
            "whether to compute the vertex functions or not."),
    _define("DELTA", str, description="path for hybridization function file"),
    _define("GLOBALFLIP", bool, False,
            "propose global relabeling of orbital pairs (0<->1, 2<->3, ...)"),
    _define("J", float, 0.0,
            "interaction value for density-density Hund's coupling term J."),
    _define("LOG_INTERVAL", int, 1000, "sweeps between status lines"),
    _define("MAX_TIME", int, 60, "code runtime in seconds."),
    _define("MEASURE_freq", bool, False, "measure in frequency domain"),
    _define("MEASURE_g2w", bool, False,
            "measure two-particle Green's function in frequency space"),
    _define("MEASURE_h2w", bool, False,
            "measure two-particle H Green's function in frequency space"),
    _define("MEASURE_legendre", bool, False,
            "measure legendre Green's function coefficients"),
    _define("MEASURE_nn", bool, False,
            "measure static density-density correlation functions"),
    _define("MEASURE_nnt", bool, False,
            "measure density-density correlation functions <n(0) n(t)>"),
    _define("MEASURE_nnw", bool, False,
            "measure density-density correlation functions in frequency domain"),
    _define("MEASURE_sector_statistics", bool, False, "measure sector statistics"),
    _define("MEASURE_time", bool, False, "measure in the time domain"),
    _define("MOVE_WEIGHTS", dict,
            description="relative selection weights per update type"),
    _define("MU", float, description="chemical potential / orbital energy values"),
    _define("MU_VECTOR", str,
            description="file name for file with chemical potential / orbital energy values"),
    _define("N_HISTOGRAM_ORDERS", int, 200,
            "orders for the histograms of probability per order"),
    _define("N_LEGENDRE", int, 0, "number of legendre coefficients"),
    _define("N_MATSUBARA", int, 0, "number of matsubara coefficients"),
    _define("N_MEAS", int, description="number of updates per measurement",
            required=True),
    _define("N_ORBITALS", int,
            description="number of spin-orbitals (sometimes called flavors)",
            required=True),
    _define("N_TAU", int, description="number of imaginary time discretization points",
            required=True),
    _define("N_W", int, description="number of bosonic Matsubara frequencies"),
    _define("N_nn", int, 0,
            "number of points for the measurement of the density density correlator"),
    _define("N_w2", int,
            description="number of fermionic frequencies for the two-particle measurement"),
    _define("OUTPUT_FILE", str, "out.npz", "file name to which results are stored"),
    _define("RET_INT_K", bool, False, "set to true for using retarded interactions"),
    _define("SEED", int, 0, "seed of the random number generator"),
    _define("SPINFLIP", bool, False,
            "propose swapping the segment configurations of two orbitals"),
    _define("SWEEPS", int, description="total number of Monte Carlo sweeps to be done",
            required=True),
    _define("TEXT_OUTPUT", bool, False,
            "if this is enabled, we write text files in addition to the npz file"),
    _define("THERMALIZATION", int, description="thermalization steps", required=True),
    _define("U", float,
            description="interaction value. Only specify if you are not reading an U matrix"),
    _define("U_MATRIX", str,
            description="file name for file that contains the interaction matrix"),
    _define("Uprime", float,
            description="interaction value Uprime (defaults to U - 2J)"),
    _define("VERBOSE", bool, True, "how verbose the code is. true = more output"),
]}


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _coerce(defn: ParameterDefinition, value: Any) -> Any:
    try:
        if defn.type is bool:
            if isinstance(value, str):
                text = value.strip().lower()
                if text in _TRUE_STRINGS:
                    return True
                if text in _FALSE_STRINGS:
                    return False
                raise ValueError(value)
            return bool(value)
        if defn.type is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            return int(value)
        if defn.type is float:
            return float(value)
        if defn.type is str:
            return str(value)
        if defn.type is list:
            if isinstance(value, (int, float)):
                return [float(value)]
            return [float(v) for v in value]
        if defn.type is dict:
            if not isinstance(value, dict):
                raise TypeError(value)
            return dict(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"parameter {defn.name} expects a value of type "
            f"{defn.type.__name__}, got {value!r}") from None
    return value


# ============================================================
# Parameter container
# ============================================================
class Parameters:
    """Simulation parameters with defaults from the parameter table.

    ``exists(name)`` is true only for values the user supplied; defaults do
    not count. This is what the conditional requirements are checked against.
    """

    def __init__(self, values: Optional[dict] = None):
        self._supplied = set()
        self._values = {}
        for defn in PARAMETER_DEFINITIONS.values():
            if defn.default is not None:
                self._values[defn.name] = defn.default
        for key, value in (values or {}).items():
            if value is None:
                continue
            defn = PARAMETER_DEFINITIONS.get(key)
            if defn is None:
                logger.debug(f"Unknown parameter {key} = {value!r} kept as is")
                self._values[key] = value
            else:
                self._values[key] = _coerce(defn, value)
            self._supplied.add(key)

    def __getitem__(self, name: str) -> Any:
        if name not in self._values:
            raise ConfigurationError(f"please specify parameter {name}")
        return self._values[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def exists(self, name: str) -> bool:
        return name in self._supplied

    def supplied(self) -> dict:
        return {k: self._values[k] for k in sorted(self._supplied)}

    def as_dict(self) -> dict:
        return dict(self._values)

    def with_overrides(self, overrides: dict) -> "Parameters":
        merged = self.supplied()
        merged.update(overrides)
        return Parameters(merged)

    def __repr__(self) -> str:
        return f"Parameters({self.supplied()!r})"


def results_file_name(output_file: str) -> str:
    """OUTPUT_FILE as numpy writes it: ``.npz`` is appended unless present."""
    name = str(output_file)
    if not name.endswith(".npz"):
        name += ".npz"
    return name


def parse_override(text: str) -> tuple[str, Any]:
    """Parse a ``KEY=VALUE`` command-line override; VALUE is read as YAML."""
    if "=" not in text:
        raise ConfigurationError(f"override {text!r} is not of the form KEY=VALUE")
    key, raw = text.split("=", 1)
    return key.strip(), yaml.safe_load(raw)


def load_parameters(path, overrides: Optional[Iterable[str]] = None) -> Parameters:
    """Read parameters from a YAML mapping and apply KEY=VALUE overrides."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} does not contain a parameter mapping")
    for item in overrides or []:
        key, value = parse_override(item)
        raw[key] = value
    return Parameters(raw)


# ============================================================
# Sanity check
# ============================================================
def sanity_check(parms: Parameters) -> None:
    """Check whether the input parameters make sense before computing.

    Passing all checks does not guarantee that every parameter is meaningful.
    """
    for defn in PARAMETER_DEFINITIONS.values():
        if defn.required and not parms.exists(defn.name):
            raise ConfigurationError(
                f"please specify parameter {defn.name} ({defn.description})")
    if not (parms.exists("U") or parms.exists("U_MATRIX")):
        raise ConfigurationError(
            "please specify either parameter U or a U_MATRIX file")
    if not (parms.exists("MU") or parms.exists("MU_VECTOR")):
        raise ConfigurationError(
            "please specify either parameter MU or a MU_VECTOR file")
    if parms["BETA"] <= 0:
        raise ConfigurationError("parameter BETA must be positive")
    if parms["N_ORBITALS"] < 1:
        raise ConfigurationError("parameter N_ORBITALS must be at least 1")
    if parms["N_MEAS"] < 1:
        raise ConfigurationError("parameter N_MEAS must be at least 1")
    if parms["N_TAU"] < 1:
        raise ConfigurationError("parameter N_TAU must be at least 1")

    # parameters that are conditionally required
    if parms["MEASURE_freq"] and not parms.exists("N_MATSUBARA"):
        raise ConfigurationError(
            "please specify parameter N_MATSUBARA for # of Matsubara frequencies to be measured")
    if parms["MEASURE_legendre"] and not parms.exists("N_LEGENDRE"):
        raise ConfigurationError(
            "please specify parameter N_LEGENDRE for # of Legendre coefficients to be measured")
    if parms["MEASURE_legendre"] and not parms.exists("N_MATSUBARA"):
        raise ConfigurationError(
            "please specify parameter N_MATSUBARA for # of Matsubara frequencies")
    if parms["MEASURE_nnt"] and not parms.exists("N_nn"):
        raise ConfigurationError(
            "please specify the parameter N_nn for # of imaginary time points "
            "for the density-density correlator")
    if parms["MEASURE_nnw"] and not parms.exists("N_W"):
        raise ConfigurationError(
            "please specify the parameter N_W for # of bosonic frequencies "
            "for the density-density correlator")
    if parms["MEASURE_g2w"] or parms["MEASURE_h2w"]:
        if not parms.exists("N_w2"):
            raise ConfigurationError(
                "please specify the parameter N_w2 for # of fermionic Matsubara "
                "frequencies for two-particle functions")
        if not parms.exists("N_W"):
            raise ConfigurationError(
                "please specify the parameter N_W for # of bosonic Matsubara "
                "frequencies for two-particle functions")
        if parms["N_w2"] % 2 != 0:
            raise ConfigurationError("parameter N_w2 must be even")
    if parms["COMPUTE_VERTEX"]:
        if not parms["MEASURE_freq"]:
            raise ConfigurationError(
                "frequency measurement is required for computing the vertex, "
                "please set MEASURE_freq=1")
        if not (parms["MEASURE_g2w"] or parms["MEASURE_h2w"]):
            raise ConfigurationError(
                "at least one two-particle quantity is required for computing "
                "the vertex, set MEASURE_g2w=1 or MEASURE_h2w=1")
        if parms["N_MATSUBARA"] < parms["N_w2"] // 2 + parms["N_W"] - 1:
            raise ConfigurationError(
                "for computing the vertex, N_MATSUBARA must be at least N_w2/2+N_W-1")


_MEASUREMENT_LABELS = [
    ("MEASURE_time", ["measuring gt"]),
    ("MEASURE_freq", ["measuring gw", "measuring fw"]),
    ("MEASURE_legendre", ["measuring gl", "measuring fl"]),
    ("MEASURE_g2w", ["measuring g2w"]),
    ("MEASURE_h2w", ["measuring h2w"]),
    ("MEASURE_nn", ["measuring nn"]),
    ("MEASURE_nnt", ["measuring nnt"]),
    ("MEASURE_nnw", ["measuring nnw"]),
    ("MEASURE_sector_statistics", ["measuring sector statistics"]),
]


def show_info(parms: Parameters, rank: int = 0) -> None:
    """Log what is measured and how long the simulation will run."""
    if not parms["VERBOSE"] or rank != 0:
        return
    for flag, lines in _MEASUREMENT_LABELS:
        if parms[flag]:
            for line in lines:
                logger.info(line)
    if parms["COMPUTE_VERTEX"]:
        logger.info("vertex will be computed")
    if parms["RET_INT_K"]:
        logger.info("using retarded interaction")
    if parms.exists("U_MATRIX"):
        logger.info(f"reading U matrix from file {parms['U_MATRIX']}")
    if parms.exists("MU_VECTOR"):
        logger.info(f"reading MU vector from file {parms['MU_VECTOR']}")
    logger.info(f"Simulation scheduled to run {parms['MAX_TIME']} seconds")
