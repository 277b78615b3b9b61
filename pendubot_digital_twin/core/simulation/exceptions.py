"""
Exception hierarchy for the pendubot digital twin.

Only setup-time misconfiguration and numerical failures of the plant model
are raised out of a run. Controller, reference and logging faults are
recovered inside the loop and surfaced as warnings instead.
"""

import numpy as np


class PendubotSimulationError(Exception):
    """Base class for all fatal simulation errors."""


class SimulationSetupError(PendubotSimulationError, ValueError):
    """Invalid or mutually exclusive run configuration, detected before the loop starts."""


class ControllerNotFoundError(SimulationSetupError):
    """The requested controller could not be resolved."""


class EOMCacheError(SimulationSetupError):
    """The cached equations of motion exist but cannot be read."""


class SingularMassMatrixError(PendubotSimulationError, np.linalg.LinAlgError):
    """
    The mass matrix M(q) could not be inverted.

    Indicates a modeling bug (non-physical link parameters); never recovered.
    """

    def __init__(self, q: np.ndarray, det: float):
        self.q = np.array(q, dtype=float)
        self.det = det
        super().__init__(
            f"Mass matrix is singular at q={self.q.tolist()} (det={det:.3e})"
        )


class IntegrationError(PendubotSimulationError, RuntimeError):
    """The ODE solver failed to reach the end of a control step."""


class ControllerFaultWarning(RuntimeWarning):
    """A controller was shut down after a fault, malformed output or logging failure."""


class ReferenceFaultWarning(RuntimeWarning):
    """The reference function raised; a neutral reference was substituted."""
