"""
Numeric integration of the pendubot over one control step.

The control input is a zero-order hold: it is computed once per step by the
controller and held constant while an adaptive, error-controlled solver
(scipy's solve_ivp, RK45 by default) takes as many internal steps as it
needs. Only the state at the step boundary is returned.
"""

import numpy as np
from scipy.integrate import solve_ivp

from pendubot_digital_twin.core.contracts import MechanismState
from pendubot_digital_twin.core.dynamics.pendulum_dynamics import PendubotDynamics
from pendubot_digital_twin.core.simulation.exceptions import IntegrationError


DEFAULT_RTOL = 1e-6
DEFAULT_ATOL = 1e-9
DEFAULT_METHOD = 'RK45'


def integrate_step(
    dynamics: PendubotDynamics,
    state: MechanismState,
    u: np.ndarray,
    t_step: float,
    rtol: float = DEFAULT_RTOL,
    atol: float = DEFAULT_ATOL,
    method: str = DEFAULT_METHOD
) -> MechanismState:
    """
    Advance the mechanism by exactly one external step.

    Parameters
    ----------
    dynamics : PendubotDynamics
        Plant model providing the state derivative
    state : MechanismState
        State at the beginning of the step
    u : np.ndarray
        Plant input [tau1, tau2], held constant over the step
    t_step : float
        Step length [s]. A negative value integrates backwards in time.
    rtol, atol : float
        Solver tolerances
    method : str
        Any adaptive solve_ivp method ('RK45', 'DOP853', 'LSODA', ...)

    Returns
    -------
    MechanismState
        State at state.t + t_step

    Raises
    ------
    IntegrationError
        If the solver does not reach the end of the step
    SingularMassMatrixError
        Propagated unchanged from the dynamics model
    """
    if t_step == 0:
        return state

    # Copy so a caller mutating its array mid-run cannot change the held input
    u_hold = np.array(u, dtype=float).reshape(2)
    t0 = state.t
    t1 = state.t + t_step

    sol = solve_ivp(
        fun=lambda t, x: dynamics.state_space_derivative(t, x, u_hold),
        t_span=(t0, t1),
        y0=state.as_vector(),
        method=method,
        rtol=rtol,
        atol=atol,
    )

    if not sol.success:
        raise IntegrationError(
            f"ODE solver failed on [{t0:.6f}, {t1:.6f}] s: {sol.message}"
        )

    x_end = sol.y[:, -1]
    if not np.all(np.isfinite(x_end)):
        raise IntegrationError(
            f"ODE solver produced a non-finite state at t={t1:.6f} s: {x_end.tolist()}"
        )

    return MechanismState.from_vector(t1, x_end)
