"""Common data models shared by the trial components."""

from __future__ import annotations

import enum
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Literal, Mapping, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a best-effort external call.

    ``unavailable`` means the call ran but produced nothing usable; ``error``
    means the call itself failed. Neither is raised to the caller.
    """

    status: Literal["ok", "unavailable", "error"]
    value: Optional[T] = None
    reason: str = ""

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(status="ok", value=value)

    @classmethod
    def unavailable(cls, reason: str = "") -> "Outcome[T]":
        return cls(status="unavailable", reason=reason)

    @classmethod
    def error(cls, reason: str) -> "Outcome[T]":
        return cls(status="error", reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def value_or(self, default: T) -> T:
        return self.value if self.is_ok and self.value is not None else default


@dataclass(frozen=True)
class TrialConfig:
    label: str
    streams: int
    workload: str
    first_block: int
    total_blocks: int
    chunk_blocks: int
    results_dir: Path

    def __post_init__(self) -> None:
        if self.streams <= 0:
            raise ValueError(f"stream count must be positive, got {self.streams}")
        if self.chunk_blocks <= 0:
            raise ValueError(f"chunk size must be positive, got {self.chunk_blocks}")

    @property
    def trial_dir(self) -> Path:
        return self.results_dir / self.label

    @property
    def placement_enabled(self) -> bool:
        return self.streams > 1


@dataclass(frozen=True)
class Chunk:
    index: int
    range_start: int
    range_end: int
    artifact_path: Path

    @property
    def size(self) -> int:
        return self.range_end - self.range_start


class ProcessRole(str, enum.Enum):
    PRODUCER = "producer"
    CONSUMER = "consumer"
    BENCHMARK_CLIENT = "benchmark-client"


# Lower value is signaled first: clients, then whatever consumes the producer.
SHUTDOWN_PRIORITY: Dict[ProcessRole, int] = {
    ProcessRole.BENCHMARK_CLIENT: 0,
    ProcessRole.CONSUMER: 1,
    ProcessRole.PRODUCER: 2,
}


class ProcessState(enum.IntEnum):
    SPAWNED = 0
    READY_PROBE_PENDING = 1
    RUNNING = 2
    SIGNALED = 3
    TERMINATED = 4
    FORCE_KILLED = 5

    @property
    def terminal(self) -> bool:
        return self in (ProcessState.TERMINATED, ProcessState.FORCE_KILLED)


@dataclass(frozen=True)
class ShutdownPolicy:
    graceful_signal: int = signal.SIGTERM
    grace_seconds: float = 30.0
    poll_interval: float = 1.0


@dataclass
class ProcessHandle:
    name: str
    role: ProcessRole
    pid: int
    start_time: float
    log_path: Path
    shutdown_policy: ShutdownPolicy = field(default_factory=ShutdownPolicy)
    readiness_probe: Optional[Callable[[], bool]] = None
    state: ProcessState = ProcessState.SPAWNED
    launcher: Optional[subprocess.Popen] = field(default=None, repr=False)

    def advance(self, new_state: ProcessState) -> None:
        """Move forward in the lifecycle; earlier or repeated states are rejected."""
        if self.state.terminal or new_state <= self.state:
            raise ValueError(f"{self.name}: illegal transition {self.state.name} -> {new_state.name}")
        self.state = new_state


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: float
    capacity_used_mb: Optional[float]
    write_amplification: Optional[float]


@dataclass(frozen=True)
class MetricsRecord:
    """Canonical per-trial metrics. ``None`` marks an unavailable metric."""

    label: str
    streams: int
    workload: str
    metrics: Mapping[str, Optional[float]] = field(default_factory=dict)
    sources: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[float]:
        return self.metrics.get(key)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "streams": self.streams,
            "workload": self.workload,
            "metrics": dict(self.metrics),
            "sources": dict(self.sources),
        }
