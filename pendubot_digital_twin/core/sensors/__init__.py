from .delay_buffer import SensorDelayBuffer, coerce_delay, make_snapshot

__all__ = ['SensorDelayBuffer', 'coerce_delay', 'make_snapshot']
