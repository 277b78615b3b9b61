"""
Telemetry Module

- data_logger: Process and controller time-series, saved as .mat, .npz or .json
"""

from .data_logger import DataLogger, NumpyEncoder, SUPPORTED_SUFFIXES

__all__ = ['DataLogger', 'NumpyEncoder', 'SUPPORTED_SUFFIXES']
