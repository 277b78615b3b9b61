"""
Simulation Module for the Pendubot Digital Twin

Modules:
--------
- simulation_runner: Fixed-step closed-loop scheduler and its configuration
- integrator: Adaptive ODE step with zero-order hold input
- simulator: simulate() entry point
- cancellation: Quit signal polled by the loop
- exceptions: Fatal errors and recoverable-fault warnings
"""

from .exceptions import (
    PendubotSimulationError,
    SimulationSetupError,
    ControllerNotFoundError,
    EOMCacheError,
    SingularMassMatrixError,
    IntegrationError,
    ControllerFaultWarning,
    ReferenceFaultWarning,
)
from .cancellation import CancellationToken
from .simulation_runner import PendubotSimulationRunner, SimulationConfig
from .simulator import simulate

__all__ = [
    'PendubotSimulationError',
    'SimulationSetupError',
    'ControllerNotFoundError',
    'EOMCacheError',
    'SingularMassMatrixError',
    'IntegrationError',
    'ControllerFaultWarning',
    'ReferenceFaultWarning',
    'CancellationToken',
    'PendubotSimulationRunner',
    'SimulationConfig',
    'simulate',
]
