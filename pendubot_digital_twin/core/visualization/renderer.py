"""
Renderer boundary for the pendubot simulation loop.

The loop hands each emitted frame to a renderer as frozen snapshots (the
true MechanismState and a ControllerView); a renderer can never reach back
into the simulation state. It may request shutdown through the run's
CancellationToken, e.g. when its window is closed.

Drawing itself lives outside this package. FrameRecorder is a headless
renderer that keeps the link poses of every frame, which is enough for
offline replay and for exercising the display/movie/snapshot paths.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np

from pendubot_digital_twin.core.contracts import MechanismState
from pendubot_digital_twin.core.controllers.sandbox import ControllerView
from pendubot_digital_twin.core.simulation.cancellation import CancellationToken


class BaseRenderer(ABC):
    """
    Abstract renderer.

    Subclasses implement update(), capture_frame(), save_snapshot() and
    close(). write_movie() is optional and only needed when a movie file is
    requested.
    """

    cancel_token: Optional[CancellationToken] = None

    def attach(self, cancel_token: CancellationToken) -> None:
        """Give the renderer the token it may use to quit the run."""
        self.cancel_token = cancel_token

    def request_quit(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.cancel()

    @abstractmethod
    def update(self, state: MechanismState, controller: ControllerView) -> None:
        """Draw one frame."""
        pass

    @abstractmethod
    def capture_frame(self) -> np.ndarray:
        """Return the most recently drawn frame as an array."""
        pass

    @abstractmethod
    def save_snapshot(self, path: Union[str, Path]) -> None:
        """Write the current frame to a file."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def write_movie(self, path: Union[str, Path], frames: Sequence[np.ndarray]) -> None:
        raise NotImplementedError(
            f"{type(self).__name__} cannot write movie files"
        )


class FrameRecorder(BaseRenderer):
    """
    Headless renderer storing the pose of both links each frame.

    A frame is a (3, 3) array with rows [base pivot, elbow joint, tip of
    link 2] in the base frame, computed from the mechanism's forward
    kinematics.

    Parameters
    ----------
    eom : NumericEOM
        Evaluator bundle providing the link geometry
    """

    def __init__(self, eom):
        self.eom = eom
        self.p = eom.parameters
        self.frames: List[np.ndarray] = []
        self.views: List[ControllerView] = []
        self.closed = False

    def _pose(self, state: MechanismState) -> np.ndarray:
        R1 = self.eom.R1in0(state.q1, state.q2)
        R2 = self.eom.R2in0(state.q1, state.q2)
        elbow = R1 @ np.array([self.p.l4, 0.0, -self.p.l1])
        tip = elbow + R2 @ np.array([self.p.l5, 0.0, -2.0 * self.p.l3])
        return np.vstack([np.zeros(3), elbow, tip])

    def update(self, state: MechanismState, controller: ControllerView) -> None:
        self.frames.append(self._pose(state))
        self.views.append(controller)

    def capture_frame(self) -> np.ndarray:
        if not self.frames:
            raise RuntimeError("No frame has been rendered yet")
        return self.frames[-1].copy()

    def save_snapshot(self, path: Union[str, Path]) -> None:
        with open(path, 'wb') as f:
            np.save(f, self.capture_frame())

    def write_movie(self, path: Union[str, Path], frames: Sequence[np.ndarray]) -> None:
        with open(path, 'wb') as f:
            np.save(f, np.stack(list(frames)))

    def close(self) -> None:
        self.closed = True
