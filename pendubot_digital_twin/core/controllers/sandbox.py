"""
Controller Sandbox

Hosts untrusted controller code. Every call into the controller goes
through a fault boundary that turns exceptions into a CallOutcome value
instead of letting them unwind the simulation loop.

State Machine:
-------------
    RUNNING --(init/run fault | malformed output | logging fault)--> STOPPED

STOPPED is absorbing: once entered, neither init nor run is called again
for the rest of the run, and the actuator command is the zero command.
The mechanism keeps integrating under that zero command.

Output Contract:
---------------
run() must return (actuators, data) where actuators is a mapping (or an
ActuatorCommand) with exactly one key, 'tau1', holding a finite real
scalar, and data is a dict. Anything else is treated exactly like a
raised exception.
"""

import time
import traceback
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable, Dict, Optional

import numpy as np

from pendubot_digital_twin.core.contracts import (
    ActuatorCommand,
    ControllerParameters,
    ControllerStatus,
    ReferenceSignal,
    SensorSnapshot,
)
from pendubot_digital_twin.core.controllers.base import BaseController
from pendubot_digital_twin.core.simulation.exceptions import ControllerFaultWarning


@dataclass
class CallOutcome:
    """Result of one guarded controller call: either a value or a fault report."""
    ok: bool
    value: Any = None
    fault: Optional[str] = None


def guarded_call(fn: Callable, *args) -> CallOutcome:
    """Invoke fn(*args), capturing any exception as a formatted report."""
    try:
        return CallOutcome(ok=True, value=fn(*args))
    except Exception:
        return CallOutcome(ok=False, fault=traceback.format_exc())


def validate_actuators(actuators: Any) -> Optional[ActuatorCommand]:
    """
    Check the actuator structure returned by a controller.

    Returns
    -------
    ActuatorCommand or None
        The validated command, or None if the structure is malformed
    """
    if isinstance(actuators, ActuatorCommand):
        value = actuators.tau1
    elif isinstance(actuators, Mapping):
        if set(actuators.keys()) != {'tau1'}:
            return None
        value = actuators['tau1']
    else:
        return None

    if isinstance(value, np.ndarray):
        if value.ndim != 0:
            return None
        value = value[()]
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (Real, np.number)):
        return None
    if isinstance(value, np.complexfloating):
        return None

    try:
        tau1 = float(value)
    except (OverflowError, TypeError, ValueError):
        return None
    if not np.isfinite(tau1):
        return None
    return ActuatorCommand(tau1=tau1)


@dataclass
class ControllerRuntime:
    """Mutable bookkeeping for the hosted controller. Owned by the sandbox."""
    status: ControllerStatus = ControllerStatus.RUNNING
    data: Dict[str, Any] = field(default_factory=dict)
    init_duration: float = 0.0
    last_run_duration: float = 0.0
    actuators: ActuatorCommand = field(default_factory=ActuatorCommand.zero)
    sensors: Optional[SensorSnapshot] = None
    references: Optional[ReferenceSignal] = None
    fault_report: Optional[str] = None
    run_calls: int = 0

    @property
    def running(self) -> bool:
        return self.status is ControllerStatus.RUNNING


@dataclass(frozen=True)
class ControllerView:
    """Read-only snapshot of the sandbox for renderers."""
    name: str
    running: bool
    actuators: ActuatorCommand
    sensors: Optional[SensorSnapshot]
    references: Optional[ReferenceSignal]
    init_duration: float
    last_run_duration: float


_SHUTDOWN_NOTICE = ("Turning off controller and setting all\n"
                    "actuator values to zero.\n")


class ControllerSandbox:
    """
    Lifecycle owner of one controller for one simulation run.

    Usage:
    ------
    >>> sandbox = ControllerSandbox(controller, parameters)
    >>> sandbox.initialize()
    >>> command = sandbox.step(sensors, references)
    """

    def __init__(self, controller: BaseController, parameters: ControllerParameters):
        """
        Parameters
        ----------
        controller : BaseController
            Controller to host
        parameters : ControllerParameters
            Constants passed to every init/run call
        """
        self.controller = controller
        self.parameters = parameters
        self.runtime = ControllerRuntime()

    @property
    def name(self) -> str:
        return self.controller.name

    @property
    def running(self) -> bool:
        return self.runtime.running

    @property
    def actuators(self) -> ActuatorCommand:
        return self.runtime.actuators

    def initialize(self) -> None:
        """
        Call the controller's init once.

        A fault or a non-dict return value stops the controller for the rest
        of the run; the simulation itself continues.
        """
        start = time.perf_counter()
        outcome = guarded_call(self.controller.init, self.parameters, {})
        self.runtime.init_duration = time.perf_counter() - start

        if not outcome.ok:
            self.stop(
                f"The 'init' function of controller\n     '{self.name}'\n"
                f"threw the following error:\n\n"
                f"==========================\n{outcome.fault}\n"
                f"==========================\n\n{_SHUTDOWN_NOTICE}"
            )
            return

        if not isinstance(outcome.value, dict):
            self.stop(
                f"The 'init' function of controller\n     '{self.name}'\n"
                f"did not return a dict 'data' (got {type(outcome.value).__name__}).\n"
                f"{_SHUTDOWN_NOTICE}"
            )
            return

        self.runtime.data = outcome.value
        self.runtime.status = ControllerStatus.RUNNING

    def step(self, sensors: SensorSnapshot, references: ReferenceSignal) -> ActuatorCommand:
        """
        Produce the actuator command for the current step.

        Parameters
        ----------
        sensors : SensorSnapshot
            Delayed sensor reading
        references : ReferenceSignal
            Current reference

        Returns
        -------
        ActuatorCommand
            The controller's validated command, or the zero command once STOPPED
        """
        self.runtime.sensors = sensors
        self.runtime.references = references

        if not self.runtime.running:
            self.runtime.last_run_duration = 0.0
            self.runtime.actuators = ActuatorCommand.zero()
            return self.runtime.actuators

        start = time.perf_counter()
        outcome = guarded_call(
            self.controller.run, sensors, references, self.parameters, self.runtime.data
        )
        self.runtime.run_calls += 1

        if not outcome.ok:
            self.stop(
                f"The 'run' function of controller\n     '{self.name}'\n"
                f"threw the following error:\n\n"
                f"==========================\n{outcome.fault}\n"
                f"==========================\n\n{_SHUTDOWN_NOTICE}"
            )
        else:
            # Output checks touch controller-owned objects, so they run guarded too
            unpacked = guarded_call(self._unpack, outcome.value)
            command, data = unpacked.value if unpacked.ok else (None, None)
            if command is None:
                self.stop(
                    f"The 'run' function of controller\n     '{self.name}'\n"
                    f"did not return a structure 'actuators' with the right\n"
                    f"format. {_SHUTDOWN_NOTICE}"
                )
            else:
                self.runtime.actuators = command
                self.runtime.data = data

        self.runtime.last_run_duration = time.perf_counter() - start
        return self.runtime.actuators

    def _unpack(self, value: Any):
        """Split a run() result into (ActuatorCommand, data); (None, None) if malformed."""
        if not isinstance(value, (tuple, list)) or len(value) != 2:
            return None, None
        actuators, data = value
        if not isinstance(data, dict):
            return None, None
        return validate_actuators(actuators), data

    def stop(self, reason: str) -> None:
        """
        Enter the terminal STOPPED state and zero the actuators.

        Calling stop() on a stopped controller does nothing, so each run
        surfaces at most one shutdown warning.
        """
        if self.runtime.status is ControllerStatus.STOPPED:
            return
        self.runtime.status = ControllerStatus.STOPPED
        self.runtime.actuators = ActuatorCommand.zero()
        self.runtime.fault_report = reason
        warnings.warn(reason, ControllerFaultWarning, stacklevel=2)

    def view(self) -> ControllerView:
        return ControllerView(
            name=self.name,
            running=self.runtime.running,
            actuators=self.runtime.actuators,
            sensors=self.runtime.sensors,
            references=self.runtime.references,
            init_duration=self.runtime.init_duration,
            last_run_duration=self.runtime.last_run_duration,
        )
