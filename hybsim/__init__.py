"""hybsim: hybridization expansion (CT-HYB) Monte Carlo in the segment picture."""

from .engine import CheckpointError, HybridizationSimulation
from .params import ConfigurationError, Parameters, load_parameters, sanity_check
from .progress import Phase, ProgressController
from .runtime import RuntimeContext
from .state import MoveType, SimulationState

__version__ = "0.1.0"

__all__ = [
    "CheckpointError",
    "ConfigurationError",
    "HybridizationSimulation",
    "MoveType",
    "Parameters",
    "Phase",
    "ProgressController",
    "RuntimeContext",
    "SimulationState",
    "load_parameters",
    "sanity_check",
]
