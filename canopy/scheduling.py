"""Timer and background-work primitives shared by time-driven components."""

import threading
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after `delay` seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


Runner = Callable[[Callable[[], None]], None]


class ThreadingScheduler:
    """Scheduler backed by daemon `threading.Timer`s."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


def run_in_thread(work: Callable[[], None]) -> None:
    """Default runner: fire-and-forget daemon thread."""
    threading.Thread(target=work, daemon=True).start()
