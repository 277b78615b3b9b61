"""
Controller Interface for the Pendubot Simulator

A controller is user-supplied code hosted by the ControllerSandbox. It is
identified by a name and exposes exactly two operations:

    init(parameters, data) -> data
    run(sensors, references, parameters, data) -> (actuators, data)

'data' is a dict owned by the controller. The simulator passes it back
unchanged on the next call and never looks inside it, except to log the
fields the user explicitly asked for.

A controller may advertise an integer 'i_delay' to receive its sensor
readings that many steps late (default 0).

Controllers can be supplied as:
- a BaseController subclass or instance
- a FunctionController wrapping two plain callables
- a mapping {'init': ..., 'run': ..., 'iDelay': ...} returned by a factory
- a registered name (see register_controller) or a 'module:attribute' path
"""

import importlib
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional, Tuple

from pendubot_digital_twin.core.contracts import (
    ControllerParameters,
    ReferenceSignal,
    SensorSnapshot,
)
from pendubot_digital_twin.core.simulation.exceptions import ControllerNotFoundError


class BaseController(ABC):
    """
    Abstract base class for all pendubot controllers.

    Subclasses implement init() and run(). Any state that must persist
    between calls belongs in the returned data dict, not on the instance,
    so that a controller instance can be reused across runs.

    Example usage:
        class Hold(BaseController):
            def init(self, parameters, data):
                return data
            def run(self, sensors, references, parameters, data):
                return {'tau1': 0.0}, data
    """

    name: str = ""
    i_delay: int = 0

    def __init__(self, name: Optional[str] = None, i_delay: Optional[int] = None):
        if name is not None:
            self.name = name
        elif not self.name:
            self.name = type(self).__name__
        if i_delay is not None:
            self.i_delay = i_delay

    @abstractmethod
    def init(self, parameters: ControllerParameters, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Initialize the controller once, before the first run() call.

        Args:
            parameters: Read-only constants (t_step, tau_max, eom)
            data: Empty dict to populate

        Returns:
            The controller data dict
        """
        pass

    @abstractmethod
    def run(
        self,
        sensors: SensorSnapshot,
        references: ReferenceSignal,
        parameters: ControllerParameters,
        data: Dict[str, Any]
    ) -> Tuple[Any, Dict[str, Any]]:
        """
        Compute the actuator command for one step.

        Args:
            sensors: Delayed sensor reading
            references: Desired q2
            parameters: Read-only constants (t_step, tau_max, eom)
            data: Controller data returned by the previous call

        Returns:
            (actuators, data) where actuators is {'tau1': float}
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, i_delay={self.i_delay!r})"


class FunctionController(BaseController):
    """Controller built from two plain callables."""

    def __init__(
        self,
        name: str,
        init: Callable,
        run: Callable,
        i_delay: Optional[int] = None
    ):
        super().__init__(name=name, i_delay=i_delay)
        self._init = init
        self._run = run

    @classmethod
    def from_mapping(cls, name: str, functions: Mapping) -> 'FunctionController':
        """
        Build a controller from {'init': f, 'run': g, 'iDelay': k}.

        'i_delay' is accepted as an alias of 'iDelay'.
        """
        missing = [key for key in ('init', 'run') if key not in functions]
        if missing:
            raise ControllerNotFoundError(
                f"Controller '{name}' does not define {missing}"
            )
        i_delay = functions.get('iDelay', functions.get('i_delay'))
        return cls(name, functions['init'], functions['run'], i_delay=i_delay)

    def init(self, parameters, data):
        return self._init(parameters, data)

    def run(self, sensors, references, parameters, data):
        return self._run(sensors, references, parameters, data)


CONTROLLER_REGISTRY: Dict[str, Callable[[], BaseController]] = {}


def register_controller(name: str):
    """Class decorator registering a controller factory under a name."""
    def decorator(factory):
        CONTROLLER_REGISTRY[name] = factory
        return factory
    return decorator


def _coerce(candidate: Any, name: str) -> BaseController:
    """Turn an object, class, factory or mapping into a BaseController."""
    if isinstance(candidate, BaseController):
        return candidate
    if isinstance(candidate, type):
        return _coerce(candidate(), name)
    if isinstance(candidate, Mapping):
        return FunctionController.from_mapping(name, candidate)
    if callable(getattr(candidate, 'init', None)) and callable(getattr(candidate, 'run', None)):
        return FunctionController(
            getattr(candidate, 'name', None) or name,
            candidate.init,
            candidate.run,
            i_delay=getattr(candidate, 'i_delay', getattr(candidate, 'iDelay', None)),
        )
    if callable(candidate):
        # Factory function, e.g. a module-level 'def my_controller(): return {...}'
        return _coerce(candidate(), name)
    raise ControllerNotFoundError(
        f"Controller '{name}' is neither a controller, a factory nor an init/run mapping"
    )


def load_controller(spec: Any) -> BaseController:
    """
    Resolve a controller specification.

    Parameters
    ----------
    spec : BaseController, type, mapping, str
        Controller object, controller class, init/run mapping, a registered
        name, or a 'package.module:attribute' import path.

    Returns
    -------
    BaseController
        Controller ready to be hosted by the sandbox

    Raises
    ------
    ControllerNotFoundError
        If the specification cannot be resolved
    """
    # Registers the built-in controllers
    from pendubot_digital_twin.core.controllers import library  # noqa: F401

    if not isinstance(spec, str):
        return _coerce(spec, getattr(spec, 'name', None) or getattr(spec, '__name__', type(spec).__name__))

    if spec in CONTROLLER_REGISTRY:
        controller = _coerce(CONTROLLER_REGISTRY[spec], spec)
        if controller.name == type(controller).__name__:
            controller.name = spec
        return controller

    module_name, sep, attribute = spec.partition(':')
    if not sep:
        module_name, _, attribute = spec.rpartition('.')
    if not module_name or not attribute:
        raise ControllerNotFoundError(f"Controller '{spec}' does not exist.")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ControllerNotFoundError(f"Controller '{spec}' does not exist ({e}).") from e

    try:
        candidate = getattr(module, attribute)
    except AttributeError as e:
        raise ControllerNotFoundError(f"Controller '{spec}' does not exist.") from e

    controller = _coerce(candidate, attribute)
    if controller.name in (type(controller).__name__, ''):
        controller.name = attribute
    return controller
