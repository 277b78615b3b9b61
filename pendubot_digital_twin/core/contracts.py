"""
Data contracts exchanged between the simulation components.

Every value that crosses a component boundary is a frozen dataclass: the
controller, the logger and the renderer only ever see copies, so none of
them can write back into the true mechanism state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np


# Sensor fields that may be exposed to a controller. 't' and 'q2' are always present.
SENSOR_FIELDS: Tuple[str, ...] = ('t', 'q1', 'q2', 'v1', 'v2')
REQUIRED_SENSOR_FIELDS: Tuple[str, ...] = ('t', 'q2')

# Fields of the process table in the data log
PROCESS_FIELDS: Tuple[str, ...] = ('t', 'q1', 'q2', 'v1', 'v2')


@dataclass(frozen=True)
class MechanismState:
    """
    True state of the two-link mechanism.

    Attributes
    ----------
    t : float
        Simulation time [s]
    q1, q2 : float
        Joint angles [rad]. q1 = 0 hangs straight down, q1 = pi is upright.
    v1, v2 : float
        Joint rates [rad/s]
    """
    t: float = 0.0
    q1: float = 0.0
    q2: float = 0.0
    v1: float = 0.0
    v2: float = 0.0

    def as_vector(self) -> np.ndarray:
        """Return the ODE state vector [q1, q2, v1, v2]."""
        return np.array([self.q1, self.q2, self.v1, self.v2], dtype=float)

    @classmethod
    def from_vector(cls, t: float, x: np.ndarray) -> 'MechanismState':
        x = np.asarray(x, dtype=float).reshape(-1)
        if x.shape != (4,):
            raise ValueError(f"State vector must have 4 elements, got shape {x.shape}")
        return cls(t=float(t), q1=float(x[0]), q2=float(x[1]),
                   v1=float(x[2]), v2=float(x[3]))


@dataclass(frozen=True)
class ActuatorCommand:
    """Torque commanded at the actuated joint [N·m]."""
    tau1: float = 0.0

    @classmethod
    def zero(cls) -> 'ActuatorCommand':
        return cls(tau1=0.0)

    def as_dict(self) -> Dict[str, float]:
        return {'tau1': self.tau1}


@dataclass(frozen=True)
class SensorSnapshot:
    """
    Read-only sensor reading handed to the controller.

    Fields that are not exposed by the run configuration are None.
    """
    t: float
    q2: float
    q1: Optional[float] = None
    v1: Optional[float] = None
    v2: Optional[float] = None

    def as_dict(self) -> Dict[str, float]:
        """Exposed fields only, in canonical order."""
        return {name: getattr(self, name) for name in SENSOR_FIELDS
                if getattr(self, name) is not None}


@dataclass(frozen=True)
class ReferenceSignal:
    """Desired value of q2 at the current time [rad]."""
    q2: float = 0.0

    @classmethod
    def neutral(cls) -> 'ReferenceSignal':
        return cls(q2=0.0)

    def as_dict(self) -> Dict[str, float]:
        return {'q2': self.q2}


@dataclass(frozen=True)
class ControllerParameters:
    """
    Constants passed to every controller call.

    Attributes
    ----------
    t_step : float
        Control period [s]
    tau_max : float
        Actuator torque limit [N·m]
    eom : NumericEOM
        Numeric evaluators M, C, N, tau of the plant model
    """
    t_step: float
    tau_max: float
    eom: Any = field(repr=False, default=None)


class ControllerStatus(Enum):
    """Lifecycle of a hosted controller. STOPPED is terminal."""
    RUNNING = "running"
    STOPPED = "stopped"
