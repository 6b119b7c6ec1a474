import threading


class Readiness:
    """Process-wide readiness flag.

    Starts READY and can only move to NOT_READY. Reads never block; the single
    transition may happen at any time from a signal handler.
    """

    def __init__(self):
        self._not_ready = threading.Event()

    def is_ready(self) -> bool:
        return not self._not_ready.is_set()

    def mark_not_ready(self) -> None:
        self._not_ready.set()

    def __repr__(self):
        return f"<Readiness {'READY' if self.is_ready() else 'NOT_READY'}>"
