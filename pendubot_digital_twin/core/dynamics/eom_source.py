"""
Equations of Motion Source for the Pendubot

This module realizes the numeric evaluators of the two-link mechanism
from its box geometry. The Lagrangian model is the classic planar double
pendulum hanging from a fixed base, actuated at the shoulder only:

    M(q) * q_dd + C(q, q_d) * q_d + N(q, q_d) = tau,    tau = [tau1, 0]

Link 1 is heavy (rho = 10) and carries its center of mass at half its
length; link 2 is light (rho = 0.1) and pivots at the tip of link 1.

Coordinates:
-----------
- q1: absolute angle of link 1 (q1 = 0 hangs down, q1 = pi is upright)
- q2: angle of link 2 relative to link 1

The physical parameters derived from the geometry are cached to a JSON
file so that repeated runs skip the derivation.
"""

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import numpy as np

from pendubot_digital_twin.core.simulation.exceptions import EOMCacheError


CACHE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class LinkGeometry:
    """
    Box dimensions [x, y, z] of the base (d0) and the two links (d1, d2) [m].
    """
    d0: Tuple[float, float, float] = (0.4, 0.5, 0.5)
    d1: Tuple[float, float, float] = (0.1, 0.5, 2.0)
    d2: Tuple[float, float, float] = (0.1, 0.5, 3.0)
    rho1: float = 10.0   # super-heavy first link
    rho2: float = 0.1    # super-light second link
    b1: float = 0.0      # viscous friction, joint 1
    b2: float = 0.0      # viscous friction, joint 2
    gravity: float = 9.81

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ('d0', 'd1', 'd2'):
            data[key] = [float(v) for v in data[key]]
        return data


@dataclass(frozen=True)
class PhysicalParameters:
    """
    Lumped parameters of the planar model.

    Attributes
    ----------
    l1 : float
        Joint-to-joint length of link 1 [m]
    l2 : float
        Distance from joint 1 to the CM of link 1 [m]
    l3 : float
        Distance from joint 2 to the CM of link 2 [m]
    m1, m2 : float
        Link masses [kg]
    I1, I2 : float
        Link inertias about their CM, around the joint axis [kg·m²]
    b1, b2 : float
        Viscous joint friction [N·m·s/rad]
    g : float
        Gravitational acceleration [m/s²]
    l4, l5 : float
        Lateral offsets of the link frames, used by forward kinematics only [m]
    """
    l1: float
    l2: float
    l3: float
    m1: float
    m2: float
    I1: float
    I2: float
    b1: float = 0.0
    b2: float = 0.0
    g: float = 9.81
    l4: float = 0.0
    l5: float = 0.0


def box_mass_and_inertia(rho: float, d) -> Tuple[float, np.ndarray]:
    """Mass and principal inertia tensor of a homogeneous box."""
    d = np.asarray(d, dtype=float)
    m = rho * d[0] * d[1] * d[2]
    J = (m / 12.0) * np.diag([d[1]**2 + d[2]**2,
                              d[0]**2 + d[2]**2,
                              d[0]**2 + d[1]**2])
    return m, J


def derive_physical_parameters(geometry: LinkGeometry) -> PhysicalParameters:
    """Compute the lumped model parameters from the box geometry."""
    d0, d1, d2 = (np.asarray(d, dtype=float) for d in (geometry.d0, geometry.d1, geometry.d2))

    # Links are mounted below the top of the base
    l1 = d1[2] - d0[2]
    l2 = l1 / 2.0
    l3 = (d2[2] - d0[2]) / 2.0

    m1, J1 = box_mass_and_inertia(geometry.rho1, d1)
    m2, J2 = box_mass_and_inertia(geometry.rho2, d2)

    # Frame offsets along the joint axis (no separation between bodies)
    l4 = d0[0] / 2.0 + d1[0] / 2.0
    l5 = d1[0] / 2.0 + d2[0] / 2.0

    return PhysicalParameters(
        l1=float(l1), l2=float(l2), l3=float(l3),
        m1=float(m1), m2=float(m2),
        I1=float(J1[0, 0]), I2=float(J2[0, 0]),
        b1=float(geometry.b1), b2=float(geometry.b2),
        g=float(geometry.gravity),
        l4=float(l4), l5=float(l5),
    )


def _rot_x(h: float) -> np.ndarray:
    c, s = np.cos(h), np.sin(h)
    return np.array([[1.0, 0.0, 0.0],
                     [0.0, c, -s],
                     [0.0, s, c]])


@dataclass(frozen=True)
class NumericEOM:
    """
    Bundle of pure numeric evaluators for the mechanism.

    M(q1, q2) -> (2, 2), C(q1, q2, v1, v2) -> (2, 2), N(q1, q2, v1, v2) -> (2,),
    tau(tau1) -> (2,). The kinematic evaluators o1in0/R1in0/o2in0/R2in0 give
    the pose of the link frames in the base frame and are only consumed by
    renderers.
    """
    parameters: PhysicalParameters
    M: Callable = field(repr=False)
    C: Callable = field(repr=False)
    N: Callable = field(repr=False)
    tau: Callable = field(repr=False)
    o1in0: Callable = field(repr=False)
    R1in0: Callable = field(repr=False)
    o2in0: Callable = field(repr=False)
    R2in0: Callable = field(repr=False)


def build_numeric_eom(p: PhysicalParameters) -> NumericEOM:
    """
    Build closed-form evaluators of M, C, N for the given parameters.

    The Coriolis matrix is factored with h = m2 * l1 * l3 * sin(q2):

        C = [[-2 h v2, -h v2],
             [  h v1,     0 ]]
    """
    # Constant inertia combinations
    a = p.m1 * p.l2**2 + p.I1 + p.m2 * (p.l1**2 + p.l3**2) + p.I2
    b = p.m2 * p.l1 * p.l3
    c = p.m2 * p.l3**2 + p.I2

    def M(q1, q2):
        c2 = np.cos(q2)
        m11 = a + 2.0 * b * c2
        m12 = c + b * c2
        return np.array([[m11, m12], [m12, c]])

    def C(q1, q2, v1, v2):
        h = b * np.sin(q2)
        return np.array([[-2.0 * h * v2, -h * v2],
                         [h * v1, 0.0]])

    def N(q1, q2, v1, v2):
        s1 = np.sin(q1)
        s12 = np.sin(q1 + q2)
        n1 = p.m1 * p.g * p.l2 * s1 + p.m2 * p.g * (p.l1 * s1 + p.l3 * s12) + p.b1 * v1
        n2 = p.m2 * p.g * p.l3 * s12 + p.b2 * v2
        return np.array([n1, n2])

    def tau(tau1):
        return np.array([tau1, 0.0])

    def R1in0(q1, q2):
        return _rot_x(q1)

    def R2in0(q1, q2):
        return _rot_x(q1) @ _rot_x(q2)

    def o1in0(q1, q2):
        return R1in0(q1, q2) @ np.array([p.l4, 0.0, -p.l2])

    def o2in0(q1, q2):
        return (R1in0(q1, q2) @ np.array([p.l4, 0.0, -p.l1])
                + R2in0(q1, q2) @ np.array([p.l5, 0.0, -p.l3]))

    return NumericEOM(parameters=p, M=M, C=C, N=N, tau=tau,
                      o1in0=o1in0, R1in0=R1in0, o2in0=o2in0, R2in0=R2in0)


def _read_cache(cache_path: Path) -> dict:
    try:
        with open(cache_path, 'r') as f:
            cached = json.load(f)
        if cached.get('version') != CACHE_FORMAT_VERSION:
            raise KeyError('version')
        return cached
    except (OSError, json.JSONDecodeError, KeyError, AttributeError) as e:
        raise EOMCacheError(
            f"Cannot read EOM cache at {cache_path}: {e}. Delete it to start fresh."
        ) from e


def load_or_build_eom(
    cache_path: Optional[Union[str, Path]] = None,
    geometry: Optional[LinkGeometry] = None,
    verbose: bool = False
) -> NumericEOM:
    """
    Realize the numeric EOM, using a cache file when one is available.

    Parameters
    ----------
    cache_path : str or Path, optional
        JSON cache of the derived parameters. None disables caching.
    geometry : LinkGeometry, optional
        Mechanism geometry; defaults to the standard pendubot.
    verbose : bool
        Print where the EOM came from.

    Returns
    -------
    NumericEOM
        Evaluator bundle for the dynamics model

    Raises
    ------
    EOMCacheError
        If the cache file exists but is unreadable
    """
    geometry = geometry or LinkGeometry()

    if cache_path is None:
        return build_numeric_eom(derive_physical_parameters(geometry))

    cache_path = Path(cache_path)
    if cache_path.exists():
        cached = _read_cache(cache_path)
        if cached.get('geometry') == geometry.as_dict():
            if verbose:
                print(f"Loading EOMs from file (delete {cache_path} to start fresh).")
            try:
                params = PhysicalParameters(**cached['parameters'])
            except (KeyError, TypeError) as e:
                raise EOMCacheError(f"Corrupt EOM cache at {cache_path}: {e}") from e
            return build_numeric_eom(params)
        if verbose:
            print(f"INFO: EOM cache {cache_path} was built for another geometry, rebuilding.")

    params = derive_physical_parameters(geometry)
    if verbose:
        print(f"Saving EOMs to file (load {cache_path} to work with them).")
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    with open(cache_path, 'w') as f:
        json.dump({
            'version': CACHE_FORMAT_VERSION,
            'geometry': geometry.as_dict(),
            'parameters': asdict(params),
        }, f, indent=2)
    return build_numeric_eom(params)
