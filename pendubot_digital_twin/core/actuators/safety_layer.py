"""
Actuator Safety Layer for the Pendubot

Turns the controller's actuator command into the plant input vector:

    u = [clip(tau1, -tau_max, tau_max), d]

where d is an unknown disturbance torque on the unactuated joint. The
disturbance is drawn once per run at setup and applied unchanged every
step. It is never reported to the controller.
"""

import numpy as np
from typing import Optional, Union

from pendubot_digital_twin.core.contracts import ActuatorCommand


def clamp(tau: Union[float, np.ndarray], tau_max: float) -> Union[float, np.ndarray]:
    """Clamp elementwise to [-tau_max, +tau_max]."""
    if tau_max < 0:
        raise ValueError(f"tau_max must be non-negative, got {tau_max}")
    return np.clip(tau, -tau_max, tau_max)


def sample_disturbance_torque(rng: np.random.Generator) -> float:
    """
    Draw a disturbance torque with magnitude in (1, 2].

    A uniform sample on [-1, 1) is shifted away from zero by its own sign,
    giving a value in [-2, -1) or (1, 2].
    """
    tau = -1.0 + 2.0 * rng.random()
    tau += 1.0 * np.sign(tau)
    return float(tau)


class ActuatorSafetyLayer:
    """
    Torque limiter and disturbance injector between controller and plant.

    Parameters
    ----------
    tau_max : float
        Torque limit of the shoulder motor [N·m]
    disturbance_torque : float, optional
        Constant torque added to the unactuated joint [N·m]; None disables it
    """

    def __init__(self, tau_max: float, disturbance_torque: Optional[float] = None):
        if tau_max < 0:
            raise ValueError(f"tau_max must be non-negative, got {tau_max}")
        self.tau_max: float = float(tau_max)
        self._disturbance_torque = disturbance_torque

    @property
    def disturbance_enabled(self) -> bool:
        return self._disturbance_torque is not None

    def to_input(self, command: ActuatorCommand) -> np.ndarray:
        """
        Build the plant input [tau1, tau2] for one step.

        Parameters
        ----------
        command : ActuatorCommand
            Command produced by the controller sandbox

        Returns
        -------
        np.ndarray
            Clamped shoulder torque and disturbance on joint 2
        """
        tau1 = float(clamp(command.tau1, self.tau_max))
        tau2 = 0.0
        if self._disturbance_torque is not None:
            tau2 += self._disturbance_torque
        return np.array([tau1, tau2])
