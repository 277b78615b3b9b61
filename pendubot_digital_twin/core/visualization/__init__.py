"""
Visualization boundary for the Pendubot Digital Twin

Renderers receive frozen frame snapshots and may only request a quit
through the run's cancellation token.
"""

from .renderer import BaseRenderer, FrameRecorder

__all__ = ['BaseRenderer', 'FrameRecorder']
