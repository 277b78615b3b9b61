import threading


class CancellationToken:
    """
    Thread-safe quit flag shared between the simulation loop and a renderer.

    A renderer (or any other thread) calls cancel(); the loop polls
    `cancelled` once per iteration, before taking the next step, and
    shuts down cleanly when it is set.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        self._event.clear()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
