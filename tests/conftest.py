from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from canopy.ai_client import AIClient

GIT_AVAILABLE = subprocess.run(["git", "--version"], capture_output=True).returncode == 0


def _run(cmd: list[str], cwd: Path | None = None) -> None:
    subprocess.run(cmd, cwd=str(cwd) if cwd else None, check=True, capture_output=True)


class FakeResponses:
    """Stands in for `OpenAI().responses`; replays scripted outcomes.

    Strings become `{"output_text": ...}` payloads, exceptions are raised,
    anything else is returned as-is. The last outcome repeats forever.
    """

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return {"output_text": outcome}
        return outcome


@pytest.fixture
def make_client() -> Callable[..., tuple[AIClient, FakeResponses]]:
    def factory(*outcomes: Any, model: str = "test-model") -> tuple[AIClient, FakeResponses]:
        responses = FakeResponses(list(outcomes) or [""])
        return AIClient(SimpleNamespace(responses=responses), model), responses

    return factory


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual scheduler: timers only fire when a test says so."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_next(self) -> None:
        timer = self.pending[0]
        timer.fired = True
        timer.callback()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A repository on `main` with one committed README."""
    if not GIT_AVAILABLE:
        pytest.skip("git missing")
    root = tmp_path / "repo"
    root.mkdir()
    _run(["git", "init", "-q"], cwd=root)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=root)
    _run(["git", "config", "user.email", "test@example.com"], cwd=root)
    _run(["git", "config", "user.name", "Test"], cwd=root)
    _run(["git", "config", "commit.gpgsign", "false"], cwd=root)
    (root / "README.md").write_text("# demo\n\nA small demo project.\n")
    _run(["git", "add", "."], cwd=root)
    _run(["git", "commit", "-q", "-m", "init"], cwd=root)
    return root


@pytest.fixture
def git() -> Callable[..., None]:
    return _run
