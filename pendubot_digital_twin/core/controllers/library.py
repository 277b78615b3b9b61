"""
Built-in controllers.

These are runtime control laws only. Gains are supplied by the caller,
typically from an offline design script; nothing here synthesizes them.
"""

import numpy as np
from typing import Optional, Sequence

from pendubot_digital_twin.core.controllers.base import BaseController, register_controller


@register_controller('zero')
class ZeroController(BaseController):
    """Always commands zero torque. Useful as a baseline and in tests."""

    name = 'zero'

    def init(self, parameters, data):
        return data

    def run(self, sensors, references, parameters, data):
        return {'tau1': 0.0}, data


@register_controller('state_feedback')
class StateFeedbackController(BaseController):
    """
    Linear state feedback around an equilibrium with reference feedforward.

    Control Law:
    -----------
    x = [q1, q2, v1, v2]

    tau1 = -K (x - x_e) + tau_e + k_ref * (r - q2_e)

    where (x_e, tau_e) is the equilibrium the gains were designed for and
    r is the desired q2. All four state components must be exposed as
    sensors.

    The current state error is kept in data['x_err'] so it can be logged.
    """

    name = 'state_feedback'

    def __init__(
        self,
        K: Optional[Sequence[float]] = None,
        x_e: Optional[Sequence[float]] = None,
        tau_e: float = 0.0,
        k_ref: float = 0.0,
        name: Optional[str] = None,
        i_delay: Optional[int] = None
    ):
        super().__init__(name=name, i_delay=i_delay)
        self.K = np.zeros(4) if K is None else np.asarray(K, dtype=float).reshape(4)
        self.x_e = np.zeros(4) if x_e is None else np.asarray(x_e, dtype=float).reshape(4)
        self.tau_e = float(tau_e)
        self.k_ref = float(k_ref)

    def init(self, parameters, data):
        data['K'] = self.K.copy()
        data['x_err'] = np.zeros(4)
        return data

    def run(self, sensors, references, parameters, data):
        hidden = [name for name in ('q1', 'q2', 'v1', 'v2') if getattr(sensors, name) is None]
        if hidden:
            raise ValueError(
                f"State feedback needs the full state, but sensors {hidden} are not exposed"
            )
        x = np.array([sensors.q1, sensors.q2, sensors.v1, sensors.v2], dtype=float)
        x_err = x - self.x_e
        r_err = references.q2 - self.x_e[1]
        tau1 = -data['K'] @ x_err + self.tau_e + self.k_ref * r_err
        data['x_err'] = x_err
        return {'tau1': float(tau1)}, data
