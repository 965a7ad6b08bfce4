"""Workload interface shared by the replay, network and sui benchmarks."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Literal, Optional, Sequence

from fdpbench.config import Settings
from fdpbench.trial.models import MetricsRecord, Outcome

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from fdpbench.trial.harness import TrialContext


@dataclass
class WorkloadResult:
    """What a workload measured, before device counters and WAF are merged in."""

    counters: Dict[str, Optional[float]] = field(default_factory=dict)
    stall_stats: bool = False
    graceful_logs: Sequence[Path] = ()
    stall_aggregate: Literal["last", "sum"] = "last"
    live: Optional[Outcome[Dict[str, float]]] = None
    details: List[str] = field(default_factory=list)


class Workload(abc.ABC):
    name: str = ""
    title: str = ""

    @abc.abstractmethod
    def check_prerequisites(self, settings: Settings) -> None:
        """Raise :class:`EnvironmentCheckError` before anything is provisioned."""

    @abc.abstractmethod
    def run(self, ctx: "TrialContext") -> WorkloadResult:
        ...

    @abc.abstractmethod
    def summary_lines(self, record: MetricsRecord, result: WorkloadResult) -> List[str]:
        ...

    def describe(self, settings: Settings) -> List[str]:
        return []


def fmt(value: Optional[float], spec: str = "") -> str:
    if value is None:
        return "N/A"
    if not spec and float(value).is_integer():
        return str(int(value))
    return format(value, spec)
