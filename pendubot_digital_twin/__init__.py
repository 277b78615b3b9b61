"""
Pendubot Digital Twin

Closed-loop simulation of a two-link pendulum actuated at the shoulder
only, driven by a pluggable, sandboxed controller.
"""

__version__ = "1.0.0"

from pendubot_digital_twin.core.simulation.simulator import simulate
from pendubot_digital_twin.core.simulation.simulation_runner import (
    PendubotSimulationRunner,
    SimulationConfig,
)
from pendubot_digital_twin.core.controllers.base import BaseController, FunctionController

__all__ = [
    'simulate',
    'PendubotSimulationRunner',
    'SimulationConfig',
    'BaseController',
    'FunctionController',
]
