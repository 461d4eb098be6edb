"""Activity mood: how recently a worktree changed."""

import threading
import time
from collections.abc import Callable

from canopy.models import Mood
from canopy.scheduling import Scheduler, TimerHandle

ACTIVE_MS = 30_000
COOLDOWN_MS = 90_000


def now_ms() -> int:
    return int(time.time() * 1000)


def mood_for(last_change_ms: int | None, now: int) -> Mood:
    """Derive the mood from the last change timestamp (ms)."""
    if not last_change_ms:
        return "idle"
    elapsed = now - last_change_ms
    if elapsed < ACTIVE_MS:
        return "active"
    if elapsed < COOLDOWN_MS:
        return "cooldown"
    return "idle"


def next_transition_ms(last_change_ms: int | None, now: int) -> int | None:
    """Milliseconds until the mood next changes, None once idle."""
    mood = mood_for(last_change_ms, now)
    if mood == "idle" or not last_change_ms:
        return None
    elapsed = now - last_change_ms
    boundary = ACTIVE_MS if mood == "active" else COOLDOWN_MS
    return max(0, boundary - elapsed)


class MoodTracker:
    """Keeps a mood current by waking up exactly at the next boundary.

    No timer is armed while idle.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        on_change: Callable[[Mood], None] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._scheduler = scheduler
        self._on_change = on_change
        self._clock = clock
        self._lock = threading.Lock()
        self._timer: TimerHandle | None = None
        self._timer_seq = 0
        self._last_change_ms: int | None = None
        self.mood: Mood = "idle"

    def update(self, last_change_ms: int | None) -> Mood:
        """Take a new timestamp and re-arm the transition timer."""
        with self._lock:
            self._last_change_ms = last_change_ms
            self.mood = mood_for(last_change_ms, self._clock())
            self._rearm()
            return self.mood

    def _rearm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        delay = next_transition_ms(self._last_change_ms, self._clock())
        if delay is not None:
            self._timer_seq += 1
            seq = self._timer_seq
            self._timer = self._scheduler.call_later(delay / 1000, lambda: self._fire(seq))

    def _fire(self, seq: int) -> None:
        with self._lock:
            if self._timer is None or seq != self._timer_seq:
                return
            self._timer = None
            previous = self.mood
            self.mood = mood_for(self._last_change_ms, self._clock())
            self._rearm()
            changed = self.mood != previous
            mood = self.mood
        if changed and self._on_change is not None:
            self._on_change(mood)

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
