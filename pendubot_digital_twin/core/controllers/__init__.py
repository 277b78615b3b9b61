"""
Controller interface, built-in control laws and the fault-isolating sandbox.
"""

from .base import (
    BaseController,
    FunctionController,
    CONTROLLER_REGISTRY,
    register_controller,
    load_controller,
)
from .library import ZeroController, StateFeedbackController
from .sandbox import ControllerSandbox, ControllerView, validate_actuators

__all__ = [
    'BaseController',
    'FunctionController',
    'CONTROLLER_REGISTRY',
    'register_controller',
    'load_controller',
    'ZeroController',
    'StateFeedbackController',
    'ControllerSandbox',
    'ControllerView',
    'validate_actuators',
]
