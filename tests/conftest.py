"""Shared fixtures: a controllable clock, a scripted command runner and settings."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from fdpbench.config import Settings
from fdpbench.timing import Clock


class FakeClock(Clock):
    """Monotonic time that only moves when something sleeps or waits.

    ``stop_at`` makes ``wait`` behave as if the event were set at that instant.
    """

    def __init__(self, start: float = 1000.0, *, stop_at: Optional[float] = None) -> None:
        self.now = start
        self.stop_at = stop_at
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += max(0.0, seconds)

    def wait(self, event: threading.Event, timeout: float) -> bool:
        with self._lock:
            if event.is_set():
                return True
            if self.stop_at is not None and self.now + timeout > self.stop_at:
                self.now = max(self.now, self.stop_at)
                event.set()
                return True
            self.now += timeout
            return event.is_set()


Handler = Callable[[List[str], Dict[str, Any]], None]


class RecordingRunner:
    """Stands in for ``run_command``: records argv and answers from registered rules."""

    def __init__(self) -> None:
        self.calls: List[Tuple[List[str], Dict[str, Any]]] = []
        self._rules: List[Tuple[str, int, str, str, Optional[Handler]]] = []

    def on(
        self,
        fragment: str,
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        action: Optional[Handler] = None,
    ) -> "RecordingRunner":
        self._rules.append((fragment, returncode, stdout, stderr, action))
        return self

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        argv = [str(part) for part in cmd]
        self.calls.append((argv, kwargs))
        line = " ".join(argv)
        for fragment, returncode, stdout, stderr, action in self._rules:
            if fragment in line:
                if action is not None:
                    action(argv, kwargs)
                output = kwargs.get("output")
                if output is not None and stdout:
                    Path(output).parent.mkdir(parents=True, exist_ok=True)
                    with Path(output).open("a", encoding="utf-8") as handle:
                        handle.write(stdout)
                return subprocess.CompletedProcess(argv, returncode, stdout, stderr)
        return subprocess.CompletedProcess(argv, 0, "", "")

    def commands(self, fragment: str) -> List[List[str]]:
        return [argv for argv, _ in self.calls if fragment in " ".join(argv)]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def factory(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "mount_point": tmp_path / "mnt",
            "fdp_tools": tmp_path / "tools",
            "fdp_stats": tmp_path / "fdp_stats",
            "results_dir": tmp_path / "results",
            "era_dir": tmp_path / "era1",
            "testnet_dir": tmp_path / "testnet",
            "use_sudo": False,
            "settle_seconds": 0.0,
            "trial_pause_seconds": 0.0,
            "monitor_interval": 300.0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory
