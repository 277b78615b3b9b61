"""
Closed-Loop Simulation Runner for the Pendubot Digital Twin

This module implements the fixed-step execution loop that couples the
mechanism model with a user-supplied controller:
- Adaptive ODE integration of the two-link dynamics (zero-order hold input)
- Delayed, read-only sensor readings
- Sandboxed controller execution with terminal shutdown on faults
- Torque saturation and a hidden constant disturbance on joint 2
- Time-series logging and persistence

Per-Step Data Flow:
------------------
Safety Layer (clamp + disturb) → Integrator (advance true state) →
Delay Buffer (push measurement) → Reference → Delay Buffer (sensed values) →
Sandbox (next command)

Loop Order:
----------
Each iteration first emits the current frame (renderer, logger), then checks
for termination (t + eps >= t_stop, or cancellation), and only then advances.
The frame at t_stop is therefore emitted exactly once.
"""

import math
import time
import traceback
import warnings
from dataclasses import dataclass, field, fields, replace
from numbers import Real
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from pendubot_digital_twin.core.actuators.safety_layer import (
    ActuatorSafetyLayer,
    sample_disturbance_torque,
)
from pendubot_digital_twin.core.contracts import (
    ControllerParameters,
    MechanismState,
    ReferenceSignal,
    SENSOR_FIELDS,
)
from pendubot_digital_twin.core.controllers.base import load_controller
from pendubot_digital_twin.core.controllers.sandbox import ControllerSandbox
from pendubot_digital_twin.core.dynamics.eom_source import LinkGeometry, load_or_build_eom
from pendubot_digital_twin.core.dynamics.pendulum_dynamics import PendubotDynamics
from pendubot_digital_twin.core.sensors.delay_buffer import (
    SensorDelayBuffer,
    coerce_delay,
    make_snapshot,
    validate_sensor_fields,
)
from pendubot_digital_twin.core.simulation.cancellation import CancellationToken
from pendubot_digital_twin.core.simulation.exceptions import (
    ReferenceFaultWarning,
    SimulationSetupError,
)
from pendubot_digital_twin.core.simulation.integrator import (
    DEFAULT_ATOL,
    DEFAULT_METHOD,
    DEFAULT_RTOL,
    integrate_step,
)
from pendubot_digital_twin.core.telemetry.data_logger import DataLogger, SUPPORTED_SUFFIXES
from pendubot_digital_twin.core.visualization.renderer import BaseRenderer


# Scale of the random default initial condition [q1, q2, v1, v2]
INITIAL_STATE_SCALE = np.array([0.1, 0.01, 0.01, 0.01])

# Option names accepted by SimulationConfig.from_dict besides the field names
OPTION_ALIASES = {
    'tStep': 't_step',
    'tauMax': 'tau_max',
    'tStop': 't_stop',
    'tStart': 't_start',
    'disturbanceTorque': 'disturbance_torque',
    'controllerdatatolog': 'controller_data_to_log',
    'sensorfields': 'sensor_fields',
    'iDelay': 'i_delay',
    'odeMethod': 'ode_method',
    'eomcache': 'eom_cache',
}


def _zero_reference(t: float) -> float:
    return 0.0


def _is_finite_number(value) -> bool:
    return (not isinstance(value, bool) and isinstance(value, Real)
            and math.isfinite(value))


@dataclass
class SimulationConfig:
    """Configuration for one closed-loop pendubot run."""

    # Timing
    t_step: float = 1.0 / 50.0      # Control period [s]
    t_stop: float = 30.0            # Stop time [s]
    t_start: float = 0.0            # Start time [s]

    # Actuation
    tau_max: float = 10.0           # Shoulder torque limit [N·m]
    disturbance: bool = False       # Constant hidden torque on joint 2
    disturbance_torque: Optional[float] = None  # Fixed disturbance [N·m]; sampled when None

    # Reference and initial condition
    reference: Callable[[float], float] = _zero_reference  # Desired q2(t) [rad]
    initial: Optional[Sequence[float]] = None  # [q1, q2, v1, v2]; random when None

    # Deterministic execution (None draws fresh entropy)
    seed: Optional[int] = None

    # Sensing
    sensor_fields: Sequence[str] = SENSOR_FIELDS
    i_delay: Optional[float] = None  # Overrides the controller's own delay when set

    # Logging and output files
    controller_data_to_log: Sequence[str] = field(default_factory=list)
    datafile: Optional[Union[str, Path]] = None
    moviefile: Optional[Union[str, Path]] = None
    snapshotfile: Optional[Union[str, Path]] = None

    # Presentation
    team: Optional[str] = None
    diagnostics: bool = False
    display: bool = False           # Real-time paced run with live rendering
    verbose: bool = False

    # Integrator
    rtol: float = DEFAULT_RTOL
    atol: float = DEFAULT_ATOL
    ode_method: str = DEFAULT_METHOD

    # Equations of motion
    eom_cache: Optional[Union[str, Path]] = None
    geometry: LinkGeometry = field(default_factory=LinkGeometry)

    def __post_init__(self):
        """Validate the configuration before any component is built."""
        for name in ('t_step', 'tau_max', 't_stop'):
            value = getattr(self, name)
            if not _is_finite_number(value) or value <= 0:
                raise SimulationSetupError(f"'{name}' must be a positive number, got {value!r}")
        if not _is_finite_number(self.t_start):
            raise SimulationSetupError(f"'t_start' must be a finite number, got {self.t_start!r}")
        if self.t_stop <= self.t_start:
            raise SimulationSetupError(
                f"'t_stop' ({self.t_stop}) must be after 't_start' ({self.t_start})"
            )
        if self.disturbance_torque is not None and not _is_finite_number(self.disturbance_torque):
            raise SimulationSetupError(
                f"'disturbance_torque' must be a finite number, got {self.disturbance_torque!r}"
            )
        if not callable(self.reference):
            raise SimulationSetupError("'reference' must be a function of time")

        if self.initial is not None:
            try:
                initial = np.array(self.initial, dtype=float).reshape(-1)
            except (TypeError, ValueError) as e:
                raise SimulationSetupError(f"'initial' is not numeric: {e}") from e
            if initial.shape != (4,) or not np.all(np.isfinite(initial)):
                raise SimulationSetupError(
                    f"'initial' must be 4 finite values [q1, q2, v1, v2], got {self.initial!r}"
                )
            self.initial = initial

        self.sensor_fields = validate_sensor_fields(self.sensor_fields)
        if self.i_delay is not None:
            self.i_delay = coerce_delay(self.i_delay)

        if isinstance(self.controller_data_to_log, str):
            self.controller_data_to_log = [self.controller_data_to_log]
        self.controller_data_to_log = list(self.controller_data_to_log or [])
        if not all(isinstance(name, str) for name in self.controller_data_to_log):
            raise SimulationSetupError("'controller_data_to_log' must be a list of field names")

        if self.datafile is not None and Path(self.datafile).suffix.lower() not in SUPPORTED_SUFFIXES:
            raise SimulationSetupError(
                f"Unsupported data file '{self.datafile}'; use one of {SUPPORTED_SUFFIXES}"
            )
        if not self.display and self.moviefile is not None:
            raise SimulationSetupError("You cannot ask to save a movie with the display turned off.")
        if not self.display and self.snapshotfile is not None:
            raise SimulationSetupError("You cannot ask to save a snapshot with the display turned off.")

        if self.rtol <= 0 or self.atol <= 0:
            raise SimulationSetupError("Integrator tolerances must be positive")

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> 'SimulationConfig':
        """
        Build a configuration from named options.

        Both the field names and the legacy option names ('tStop',
        'controllerdatatolog', ...) are accepted. Unknown names are rejected.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in options.items():
            name = OPTION_ALIASES.get(key, key)
            if name not in known:
                raise SimulationSetupError(f"Unknown simulation option '{key}'")
            if name in kwargs:
                raise SimulationSetupError(f"Simulation option '{name}' given twice")
            kwargs[name] = value
        return cls(**kwargs)


class PendubotSimulationRunner:
    """
    Closed-loop simulation runner for the pendubot.

    The runner owns the true mechanism state, the delay buffer and the
    controller sandbox; every other component only receives copies.

    Usage:
    ------
    >>> config = SimulationConfig(t_stop=5.0, seed=42)
    >>> runner = PendubotSimulationRunner(config, 'zero')
    >>> results = runner.run_simulation()
    >>> print(f"Final q1: {results['final_state'].q1:.3f} rad")
    """

    # Tolerance of the t_stop comparison
    TIME_EPSILON = 1e-9

    def __init__(
        self,
        config: SimulationConfig,
        controller: Any,
        renderer: Optional[BaseRenderer] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        """
        Initialize the runner and perform the complete run setup.

        Parameters
        ----------
        config : SimulationConfig
            Run configuration
        controller : BaseController, str, type or mapping
            Controller specification, resolved with load_controller
        renderer : BaseRenderer, optional
            Receives every frame when config.display is set
        cancel_token : CancellationToken, optional
            External quit signal, polled once per loop iteration

        Raises
        ------
        SimulationSetupError
            On misconfiguration or an unresolvable controller
        """
        self.config = config
        self.controller = load_controller(controller)
        self.renderer = renderer
        self.cancel_token = cancel_token if cancel_token is not None else CancellationToken()

        if (config.moviefile is not None or config.snapshotfile is not None) and renderer is None:
            raise SimulationSetupError("Saving a movie or a snapshot requires a renderer.")
        if config.moviefile is not None and type(renderer).write_movie is BaseRenderer.write_movie:
            raise SimulationSetupError(f"{type(renderer).__name__} cannot write movie files.")

        if renderer is not None:
            renderer.attach(self.cancel_token)

        self._setup()

    def _setup(self) -> None:
        """Build every component and compute the first actuator command."""
        self.rng = np.random.default_rng(self.config.seed)
        self.iteration: int = 0
        self.wall_time: float = 0.0
        self.frames: List[np.ndarray] = []

        self._init_dynamics()
        self._init_state()
        self._init_actuators()
        self._init_controller()
        self._init_sensors()
        self._init_logging()

        # The first frame needs a defined command
        self.references = self._get_references(self.state.t)
        self.sandbox.step(self.sensor_buffer.peek(), self.references)

    def _init_dynamics(self) -> None:
        self.eom = load_or_build_eom(
            cache_path=self.config.eom_cache,
            geometry=self.config.geometry,
            verbose=self.config.verbose,
        )
        self.dynamics = PendubotDynamics(self.eom)

    def _init_state(self) -> None:
        if self.config.initial is not None:
            x0 = np.asarray(self.config.initial, dtype=float)
        else:
            x0 = INITIAL_STATE_SCALE * self.rng.standard_normal(4)
        self.state = MechanismState.from_vector(self.config.t_start, x0)

    def _init_actuators(self) -> None:
        # Drawn after the initial state so a seeded run reproduces both
        self.disturbance_torque: Optional[float] = None
        if self.config.disturbance:
            if self.config.disturbance_torque is not None:
                self.disturbance_torque = float(self.config.disturbance_torque)
            else:
                self.disturbance_torque = sample_disturbance_torque(self.rng)
            if self.config.verbose:
                print(f"INFO: Disturbance enabled on joint 2 ({self.disturbance_torque:+.3f} N·m)")
        self.actuators = ActuatorSafetyLayer(self.config.tau_max, self.disturbance_torque)
        self.last_input = np.zeros(2)

    def _init_controller(self) -> None:
        if self.config.i_delay is not None:
            self.i_delay = coerce_delay(self.config.i_delay)
        else:
            self.i_delay = coerce_delay(getattr(self.controller, 'i_delay', 0))
        if self.config.verbose and self.i_delay > 0:
            print(f"     controller {self.controller.name} has i_delay={self.i_delay}")

        self.parameters = ControllerParameters(
            t_step=self.config.t_step,
            tau_max=self.config.tau_max,
            eom=self.eom,
        )
        self.sandbox = ControllerSandbox(self.controller, self.parameters)
        self.sandbox.initialize()

    def _init_sensors(self) -> None:
        self.sensor_fields = self.config.sensor_fields
        self.sensor_buffer = SensorDelayBuffer(
            self.i_delay, make_snapshot(self.state, self.sensor_fields)
        )

    def _init_logging(self) -> None:
        # Controller data is only captured when a data file is written
        data_to_log = self.config.controller_data_to_log if self.config.datafile is not None else ()
        self.logger = DataLogger(
            controller_data_to_log=data_to_log,
            sensor_fields=self.sensor_fields,
        )

    def _get_references(self, t: float) -> ReferenceSignal:
        """Evaluate the reference function; a fault yields the neutral reference."""
        try:
            return ReferenceSignal(q2=float(self.config.reference(t)))
        except Exception:
            warnings.warn(
                "The 'reference' function passed to the simulator\n"
                "threw the following error:\n\n"
                "==========================\n"
                f"{traceback.format_exc()}\n"
                "==========================\n\n"
                "Using the neutral reference q2 = 0.\n",
                ReferenceFaultWarning,
                stacklevel=2,
            )
            return ReferenceSignal.neutral()

    def run_single_step(self) -> MechanismState:
        """
        Advance the closed loop by one control period.

        Returns
        -------
        MechanismState
            New true state of the mechanism
        """
        # 1. Clamp the held command and add the disturbance
        self.last_input = self.actuators.to_input(self.sandbox.actuators)

        # 2. Integrate the mechanism over one step
        next_state = integrate_step(
            self.dynamics, self.state, self.last_input, self.config.t_step,
            rtol=self.config.rtol, atol=self.config.atol, method=self.config.ode_method,
        )

        # Recompute time from the iteration count to avoid drift
        self.iteration += 1
        self.state = replace(
            next_state, t=self.config.t_start + self.iteration * self.config.t_step
        )

        # 3. Measure, then read the delayed sensors
        self.sensor_buffer.push(make_snapshot(self.state, self.sensor_fields))
        self.references = self._get_references(self.state.t)

        # 4. Next command
        self.sandbox.step(self.sensor_buffer.peek(), self.references)

        return self.state

    def _emit(self) -> None:
        """Hand the current frame to the renderer, when displaying, and then the logger."""
        if self.renderer is not None and self.config.display:
            self.renderer.update(self.state, self.sandbox.view())
            if self.config.moviefile is not None:
                self.frames.append(self.renderer.capture_frame())
        self.logger.record(self.state, self.sandbox)

    def _pace(self, wall_start: float) -> None:
        """Wait until wall-clock time catches up with simulated time."""
        target = self.state.t - self.config.t_start
        while True:
            remaining = target - (time.perf_counter() - wall_start)
            if remaining <= 0:
                break
            time.sleep(min(0.001, remaining))  # Max 1ms sleep

    def run_simulation(self) -> Dict:
        """
        Execute the closed-loop run until t_stop or cancellation.

        Returns
        -------
        Dict
            Logged telemetry and run summary
        """
        if self.config.verbose:
            print("=" * 70)
            print(f"Pendubot simulation: controller '{self.controller.name}'"
                  + (f" ({self.config.team})" if self.config.team else ""))
            print("=" * 70)
            print(f"  t_step: {self.config.t_step*1e3:.2f} ms")
            print(f"  t_stop: {self.config.t_stop:.2f} s")
            print(f"  tau_max: {self.config.tau_max:.2f} N·m")
            print(f"  i_delay: {self.i_delay}")
            print(f"  Display: {'Enabled' if self.config.display else 'Disabled'}")

        wall_start = time.perf_counter()
        try:
            while True:
                self._emit()

                if self.state.t + self.TIME_EPSILON >= self.config.t_stop:
                    break
                if self.cancel_token.cancelled:
                    if self.config.verbose:
                        print(f"  Run cancelled at t={self.state.t:.2f}s")
                    break

                self.run_single_step()

                if self.config.display:
                    self._pace(wall_start)

            self.wall_time = time.perf_counter() - wall_start
            self._save_outputs()
        finally:
            if self.renderer is not None:
                self.renderer.close()

        if self.config.verbose:
            print(f"Simulation complete: {self.state.t - self.config.t_start:.3f} simulated seconds")
            print(f"  Wall-clock time: {self.wall_time:.2f} seconds")
            print(f"  Total iterations: {self.iteration}")

        results = self._compute_summary()
        if self.config.diagnostics:
            self.print_diagnostics(results)
        return results

    def _save_outputs(self) -> None:
        if self.config.moviefile is not None:
            self.renderer.write_movie(self.config.moviefile, self.frames)
        if self.config.datafile is not None:
            path = self.logger.save(self.config.datafile)
            if self.config.verbose:
                print(f"INFO: Data saved to {path}")
        if self.config.snapshotfile is not None:
            self.renderer.save_snapshot(self.config.snapshotfile)

    def _compute_summary(self) -> Dict:
        """
        Compute summary statistics from the logged data.

        Returns
        -------
        Dict
            Log arrays, final state and controller status
        """
        log = self.logger.as_arrays()
        t = log['processdata']['t']
        tau1 = log['controllerdata']['actuators']['tau1']

        return {
            'log': log,
            'n_samples': self.logger.count,
            'duration': float(t[-1] - t[0]) if len(t) > 0 else 0.0,
            'final_state': self.state,
            'iterations': self.iteration,
            'controller_running': self.sandbox.running,
            'fault_report': self.sandbox.runtime.fault_report,
            'disturbance_torque': self.disturbance_torque,
            'i_delay': self.i_delay,
            'cancelled': self.cancel_token.cancelled,
            'wall_time': self.wall_time,
            'tau1_rms': float(np.sqrt(np.mean(tau1**2))) if len(tau1) > 0 else 0.0,
            'tau1_max_abs': float(np.max(np.abs(tau1))) if len(tau1) > 0 else 0.0,
        }

    def print_diagnostics(self, results: Dict) -> None:
        """Print a results table for the finished run."""
        final = results['final_state']
        print()
        print("=" * 70)
        print("SIMULATION RESULTS")
        print("=" * 70)
        print(f"Duration:          {results['duration']:.3f} s")
        print(f"Samples logged:    {results['n_samples']}")
        print(f"Controller:        {'running' if results['controller_running'] else 'STOPPED'}")
        print()
        print("CONTROL EFFORT:")
        print(f"  Torque RMS:      {results['tau1_rms']:.3f} N·m")
        print(f"  Torque max:      {results['tau1_max_abs']:.3f} N·m")
        print()
        print("FINAL STATE:")
        print(f"  q1:              {np.rad2deg(final.q1):.3f}°")
        print(f"  q2:              {np.rad2deg(final.q2):.3f}°")
        print("=" * 70)

    def reset(self) -> None:
        """
        Reset the run to its initial conditions, re-initializing the controller.

        A pending quit request is cleared. The renderer is closed at the end of
        every run_simulation(), so a display run after reset() needs a renderer
        that can be updated again after close().
        """
        self.cancel_token.reset()
        self._setup()
