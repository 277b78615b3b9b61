"""
Sensor Delay Model for the Pendubot

Measurements reach the controller a fixed number of control steps after
they were taken, modeling sensing and transport latency. The delay is
implemented as a fixed-length FIFO of sensor snapshots: each step the
newest measurement is appended, the oldest is dropped, and the controller
sees the oldest one still held.

With i_delay = k the controller at step n observes the true state of step
n - k. For n < k it observes the very first snapshot, which pre-fills the
buffer, so no step ever sees uninitialized data.
"""

import math
from collections import deque
from numbers import Real
from typing import Iterable, Sequence

from pendubot_digital_twin.core.contracts import (
    MechanismState,
    SensorSnapshot,
    SENSOR_FIELDS,
    REQUIRED_SENSOR_FIELDS,
)
from pendubot_digital_twin.core.simulation.exceptions import SimulationSetupError


def coerce_delay(value) -> int:
    """
    Convert a configured delay into a step count.

    Fractional values are truncated and negative values become zero.

    Raises
    ------
    SimulationSetupError
        If the value is not a finite real number
    """
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        raise SimulationSetupError(f"Sensor delay must be a finite number of steps, got {value!r}")
    return max(0, int(math.floor(value)))


def validate_sensor_fields(fields: Iterable[str]) -> tuple:
    """Return the exposed sensor fields in canonical order, always including t and q2."""
    requested = set(fields)
    unknown = requested - set(SENSOR_FIELDS)
    if unknown:
        raise SimulationSetupError(
            f"Unknown sensor fields {sorted(unknown)}; available: {list(SENSOR_FIELDS)}"
        )
    requested.update(REQUIRED_SENSOR_FIELDS)
    return tuple(name for name in SENSOR_FIELDS if name in requested)


def make_snapshot(state: MechanismState, sensor_fields: Sequence[str] = SENSOR_FIELDS) -> SensorSnapshot:
    """
    Take a measurement of the true state.

    Values are copied into a new frozen snapshot; fields that are not
    exposed stay None.
    """
    optional = {name: float(getattr(state, name))
                for name in ('q1', 'v1', 'v2') if name in sensor_fields}
    return SensorSnapshot(t=float(state.t), q2=float(state.q2), **optional)


class SensorDelayBuffer:
    """
    Fixed-length FIFO holding the latest i_delay + 1 sensor snapshots.

    Example:
    --------
    >>> buffer = SensorDelayBuffer(i_delay=2, initial=make_snapshot(state0))
    >>> buffer.push(make_snapshot(state1))
    >>> sensed = buffer.peek()   # still the snapshot of state0
    """

    def __init__(self, i_delay: int, initial: SensorSnapshot):
        """
        Parameters
        ----------
        i_delay : int
            Delay in control steps (coerced with coerce_delay)
        initial : SensorSnapshot
            First snapshot, replicated to fill the buffer
        """
        self.i_delay: int = coerce_delay(i_delay)
        self.length: int = self.i_delay + 1
        self._buffer: deque = deque([initial] * self.length, maxlen=self.length)

    def push(self, snapshot: SensorSnapshot) -> SensorSnapshot:
        """
        Append the newest snapshot and drop the oldest.

        Returns
        -------
        SensorSnapshot
            The snapshot that was dropped
        """
        dropped = self._buffer[0]
        self._buffer.append(snapshot)
        return dropped

    def peek(self) -> SensorSnapshot:
        """Current sensed value: the oldest snapshot still held."""
        return self._buffer[0]

    def __len__(self) -> int:
        return len(self._buffer)
