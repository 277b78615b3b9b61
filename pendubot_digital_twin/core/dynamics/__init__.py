from .eom_source import LinkGeometry, PhysicalParameters, NumericEOM, load_or_build_eom
from .pendulum_dynamics import PendubotDynamics

__all__ = [
    'LinkGeometry',
    'PhysicalParameters',
    'NumericEOM',
    'load_or_build_eom',
    'PendubotDynamics',
]
