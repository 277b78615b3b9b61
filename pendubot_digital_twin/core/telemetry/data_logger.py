"""
Simulation Data Logger

Accumulates one row per emitted frame in two tables and persists them.

Log Layout
----------
{
    "processdata": {"t": (n,), "q1": (n,), "q2": (n,), "v1": (n,), "v2": (n,)},
    "controllerdata": {
        "tInit": float,
        "tRun": (n,),
        "running": (n,),
        "sensors": {"t": (n,), "q2": (n,), ...},
        "actuators": {"tau1": (n,)},
        "data": {"<name>": (n, *shape), ...}
    }
}

Controller-data fields are requested by name. A field that cannot be
captured (missing, not numeric, or changing shape between steps) shuts the
controller down and is recorded as NaN. While the controller is stopped,
requested fields are recorded as NaN as well.

Supported output formats are chosen by file suffix: .mat (scipy), .npz
(numpy) and .json.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.io import savemat

from pendubot_digital_twin.core.contracts import (
    MechanismState,
    PROCESS_FIELDS,
    SENSOR_FIELDS,
)


SUPPORTED_SUFFIXES: Tuple[str, ...] = ('.mat', '.npz', '.json')


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy arrays."""

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, (np.bool_,)):
            return bool(obj)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


class DataLogger:
    """
    Time-series log of the process and the hosted controller.

    Example Usage
    -------------
    >>> logger = DataLogger(controller_data_to_log=['x_err'])
    >>> logger.record(state, sandbox)        # once per emitted frame
    >>> process_df, controller_df = logger.to_dataframes()
    >>> logger.save('run.mat')

    Parameters
    ----------
    controller_data_to_log : sequence of str
        Names of controller data fields to capture every step
    sensor_fields : sequence of str
        Sensor fields exposed to the controller (one column each)
    """

    def __init__(
        self,
        controller_data_to_log: Sequence[str] = (),
        sensor_fields: Sequence[str] = SENSOR_FIELDS
    ):
        self.controller_data_to_log: List[str] = list(controller_data_to_log or [])
        self.sensor_fields: Tuple[str, ...] = tuple(sensor_fields)
        self.reset()

    def reset(self) -> None:
        """Discard all recorded rows."""
        self.count: int = 0
        self.t_init: float = float('nan')
        self._process: Dict[str, List[float]] = {name: [] for name in PROCESS_FIELDS}
        self._t_run: List[float] = []
        self._running: List[bool] = []
        self._sensors: Dict[str, List[float]] = {name: [] for name in self.sensor_fields}
        self._actuators: Dict[str, List[float]] = {'tau1': []}
        self._data: Dict[str, List[np.ndarray]] = {name: [] for name in self.controller_data_to_log}
        self._data_shapes: Dict[str, Optional[Tuple[int, ...]]] = {
            name: None for name in self.controller_data_to_log
        }

    def _capture(self, name: str, data: Dict[str, Any]) -> np.ndarray:
        """Copy one requested data field, enforcing a fixed numeric shape."""
        if name not in data:
            raise KeyError(f"'{name}' is not a field of the controller data")
        value = np.array(data[name], dtype=float)
        expected = self._data_shapes[name]
        if expected is not None and value.shape != expected:
            raise ValueError(
                f"'{name}' changed shape from {expected} to {value.shape}"
            )
        return value

    def _nan_like(self, name: str) -> np.ndarray:
        shape = self._data_shapes[name]
        return np.full(shape if shape is not None else (), np.nan)

    def record(self, state: MechanismState, sandbox) -> None:
        """
        Append one row to both tables.

        Parameters
        ----------
        state : MechanismState
            True state of the mechanism at this frame
        sandbox : ControllerSandbox
            Hosted controller; stopped here if a requested field cannot be captured
        """
        self.count += 1

        for name in PROCESS_FIELDS:
            self._process[name].append(float(getattr(state, name)))

        runtime = sandbox.runtime
        self.t_init = float(runtime.init_duration)

        # Data first: a capture fault stops the controller and zeros this row's actuators
        for name in self.controller_data_to_log:
            if not sandbox.running:
                self._data[name].append(self._nan_like(name))
                continue
            try:
                value = self._capture(name, runtime.data)
            except Exception as e:
                sandbox.stop(
                    f"Saving element '{name}' of data for controller\n"
                    f"     '{sandbox.name}'\n"
                    f"threw the following error:\n\n"
                    f"==========================\n{e!r}\n"
                    f"==========================\n\n"
                    f"Turning off controller and setting all\n"
                    f"actuator values to zero.\n"
                )
                self._data[name].append(self._nan_like(name))
                continue
            if self._data_shapes[name] is None:
                self._data_shapes[name] = value.shape
                # Back-fill earlier NaN rows to the now known shape
                self._data[name] = [np.full(value.shape, np.nan) for _ in self._data[name]]
            self._data[name].append(value)

        self._t_run.append(float(runtime.last_run_duration))
        self._running.append(bool(sandbox.running))

        sensors = runtime.sensors
        for name in self.sensor_fields:
            value = getattr(sensors, name, None) if sensors is not None else None
            self._sensors[name].append(float('nan') if value is None else float(value))

        for name, value in runtime.actuators.as_dict().items():
            self._actuators[name].append(float(value))

    def _stack_data(self, name: str) -> np.ndarray:
        rows = self._data[name]
        if not rows:
            shape = self._data_shapes[name] or ()
            return np.empty((0,) + tuple(shape))
        return np.stack(rows)

    def as_arrays(self) -> Dict[str, Dict[str, Any]]:
        """Return the log as nested dicts of numpy arrays (see module docstring)."""
        return {
            'processdata': {name: np.asarray(values, dtype=float)
                            for name, values in self._process.items()},
            'controllerdata': {
                'tInit': self.t_init,
                'tRun': np.asarray(self._t_run, dtype=float),
                'running': np.asarray(self._running, dtype=bool),
                'sensors': {name: np.asarray(values, dtype=float)
                            for name, values in self._sensors.items()},
                'actuators': {name: np.asarray(values, dtype=float)
                              for name, values in self._actuators.items()},
                'data': {name: self._stack_data(name) for name in self.controller_data_to_log},
            },
        }

    def to_dataframes(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Convert the log to pandas DataFrames for analysis.

        Returns
        -------
        (process_df, controller_df)
            One row per frame. Controller columns are named 'tRun', 'running',
            'sensors.<field>', 'actuators.<field>' and 'data.<field>'; array-valued
            data fields are flattened to 'data.<field>[i]' columns.
        """
        arrays = self.as_arrays()
        process_df = pd.DataFrame(arrays['processdata'])

        controller = arrays['controllerdata']
        columns: Dict[str, np.ndarray] = {
            'tRun': controller['tRun'],
            'running': controller['running'],
        }
        for group in ('sensors', 'actuators'):
            for name, values in controller[group].items():
                columns[f'{group}.{name}'] = values
        for name, values in controller['data'].items():
            if values.ndim == 1:
                columns[f'data.{name}'] = values
                continue
            flat = values.reshape(values.shape[0], -1)
            for i in range(flat.shape[1]):
                columns[f'data.{name}[{i}]'] = flat[:, i]
        controller_df = pd.DataFrame(columns)
        controller_df.attrs['tInit'] = controller['tInit']
        return process_df, controller_df

    def save(self, path: Union[str, Path]) -> Path:
        """
        Persist the log; the format follows the file suffix.

        Raises
        ------
        ValueError
            If the suffix is not one of SUPPORTED_SUFFIXES
        """
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix not in SUPPORTED_SUFFIXES:
            raise ValueError(
                f"Unsupported data file format '{suffix}'; use one of {SUPPORTED_SUFFIXES}"
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        arrays = self.as_arrays()

        if suffix == '.mat':
            savemat(str(path), arrays)
        elif suffix == '.npz':
            np.savez(str(path), **_flatten(arrays))
        else:
            with open(path, 'w') as f:
                json.dump(arrays, f, indent=2, cls=NumpyEncoder)
        return path


def _flatten(tree: Dict[str, Any], prefix: str = '') -> Dict[str, Any]:
    """Flatten nested dicts to 'a/b/c' keys for np.savez."""
    flat = {}
    for key, value in tree.items():
        name = f'{prefix}/{key}' if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        else:
            flat[name] = np.asarray(value)
    return flat
