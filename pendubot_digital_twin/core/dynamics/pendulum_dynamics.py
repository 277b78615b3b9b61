import numpy as np
from typing import Optional

from pendubot_digital_twin.core.dynamics.eom_source import NumericEOM, load_or_build_eom
from pendubot_digital_twin.core.simulation.exceptions import SingularMassMatrixError


class PendubotDynamics:
    """
    Lagrangian dynamics of the two-link pendubot.

    System Description:
    - Link 1 pivots on a fixed base and is driven by the only motor.
    - Link 2 pivots freely at the tip of link 1 (unactuated joint).

    Lagrangian Formulation:
    M(q) * q_dd + C(q, q_d) * q_d + N(q, q_d) = tau

    where:
    - q: Joint position vector [q1, q2] (rad)
    - q_d: Joint velocity vector [v1, v2] (rad/s)
    - M(q): Inertia Matrix (2x2), symmetric positive definite
    - C(q, q_d): Coriolis and Centrifugal Matrix (2x2)
    - N(q, q_d): Gravity and friction vector (2,)
    - tau: [tau1, tau2] where tau2 only ever carries a disturbance

    The model holds no state of its own; every method is a pure function of
    its arguments and the evaluator bundle.
    """

    # Relative determinant threshold below which M(q) is treated as singular
    SINGULARITY_TOLERANCE = 1e-12

    def __init__(self, eom: Optional[NumericEOM] = None):
        """
        Args:
            eom (NumericEOM): Numeric evaluators M, C, N, tau. Defaults to the
                standard pendubot geometry (no cache).
        """
        self.eom = eom if eom is not None else load_or_build_eom()

    def get_mass_matrix(self, q: np.ndarray) -> np.ndarray:
        return np.asarray(self.eom.M(q[0], q[1]), dtype=float)

    def get_coriolis_matrix(self, q: np.ndarray, dq: np.ndarray) -> np.ndarray:
        return np.asarray(self.eom.C(q[0], q[1], dq[0], dq[1]), dtype=float)

    def get_bias_vector(self, q: np.ndarray, dq: np.ndarray) -> np.ndarray:
        return np.asarray(self.eom.N(q[0], q[1], dq[0], dq[1]), dtype=float).reshape(2)

    def assemble_torque(self, u: np.ndarray) -> np.ndarray:
        """
        Map the plant input u = [tau1, tau2_disturbance] to joint torques.

        The actuated joint receives tau1 through eom.tau; the second entry of
        u is added directly to the unactuated joint.
        """
        return np.asarray(self.eom.tau(u[0]), dtype=float).reshape(2) + np.array([0.0, u[1]])

    def compute_forward_dynamics(self, q: np.ndarray, dq: np.ndarray, tau: np.ndarray) -> np.ndarray:
        """
        Compute joint accelerations q_dd given state and torque.

        Solves M(q) * q_dd = tau - C(q,dq)dq - N(q,dq) with a closed-form 2x2
        solve (Cramer's rule) instead of inverting M.

        Args:
            q (np.ndarray): Joint positions [rad]
            dq (np.ndarray): Joint velocities [rad/s]
            tau (np.ndarray): Joint torques [Nm]

        Returns:
            np.ndarray: Joint accelerations [rad/s^2]

        Raises:
            SingularMassMatrixError: if M(q) is singular or non-finite
        """
        M = self.get_mass_matrix(q)
        C = self.get_coriolis_matrix(q, dq)
        N = self.get_bias_vector(q, dq)

        rhs = tau - (C @ dq) - N

        det = M[0, 0] * M[1, 1] - M[0, 1] * M[1, 0]
        scale = abs(M[0, 0] * M[1, 1]) + abs(M[0, 1] * M[1, 0])
        if not np.isfinite(det) or abs(det) <= self.SINGULARITY_TOLERANCE * max(scale, 1.0):
            raise SingularMassMatrixError(q, float(det))

        a1 = (M[1, 1] * rhs[0] - M[0, 1] * rhs[1]) / det
        a2 = (M[0, 0] * rhs[1] - M[1, 0] * rhs[0]) / det
        return np.array([a1, a2])

    def state_space_derivative(self, t: float, state: np.ndarray, u: np.ndarray) -> np.ndarray:
        """
        Compute derivative of state vector X = [q1, q2, v1, v2] for ODE solvers.

        Args:
            t (float): Time (s) - required by standard ODE solvers
            state (np.ndarray): State vector [q1, q2, v1, v2]
            u (np.ndarray): Plant input [tau1, tau2], held constant by the caller

        Returns:
            np.ndarray: State derivative [v1, v2, a1, a2]
        """
        q = state[0:2]
        dq = state[2:4]

        ddq = self.compute_forward_dynamics(q, dq, self.assemble_torque(u))

        return np.concatenate([dq, ddq])

    def kinetic_energy(self, state: np.ndarray) -> float:
        """T = 1/2 * q_d' M(q) q_d"""
        q, dq = state[0:2], state[2:4]
        return float(0.5 * dq @ self.get_mass_matrix(q) @ dq)

    def potential_energy(self, state: np.ndarray) -> float:
        """Gravitational potential, zero with both links level with the base pivot."""
        p = self.eom.parameters
        q1, q2 = state[0], state[1]
        c1 = np.cos(q1)
        c12 = np.cos(q1 + q2)
        return float(-p.m1 * p.g * p.l2 * c1 - p.m2 * p.g * (p.l1 * c1 + p.l3 * c12))

    def total_energy(self, state: np.ndarray) -> float:
        return self.kinetic_energy(state) + self.potential_energy(state)
