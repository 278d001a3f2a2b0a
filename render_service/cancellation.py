"""Cooperative cancellation token shared between the queue, renderer and ffmpeg."""

import threading


class CancellationToken:
    """Set once by the queue; polled by workers at their checkpoints."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
