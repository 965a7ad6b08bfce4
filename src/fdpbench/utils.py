"""Small helpers shared across fdp-bench modules."""

from __future__ import annotations

import datetime
import logging
import subprocess
from collections import deque
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]


def run_command(
    cmd: Sequence[str],
    *,
    check: bool = False,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    capture: bool = True,
    output: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` to completion and return the completed process.

    With ``output`` set, stdout and stderr are appended to that file instead
    of being captured.
    """
    logger.debug("exec: %s", " ".join(str(part) for part in cmd))
    argv = [str(part) for part in cmd]
    env_map = dict(env) if env is not None else None
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("a", encoding="utf-8") as handle:
            return subprocess.run(
                argv,
                check=check,
                timeout=timeout,
                env=env_map,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
            )
    return subprocess.run(
        argv,
        check=check,
        timeout=timeout,
        env=env_map,
        capture_output=capture,
        text=True,
    )


def secs_to_duration(seconds: float) -> str:
    """Compact duration: ``5m3s`` under an hour, ``1h02m03s`` above."""
    s = max(0, int(seconds))
    if s >= 3600:
        return f"{s // 3600}h{s % 3600 // 60:02d}m{s % 60:02d}s"
    return f"{s // 60}m{s % 60}s"


def tail_file(path: Path, lines: int = 20) -> str:
    """Last ``lines`` lines of ``path``; empty string if it cannot be read."""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=lines)).rstrip("\n")
    except OSError:
        return ""


def current_timestamp() -> str:
    """Human-readable local timestamp for report headers."""
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
