"""Benchmark workloads selectable per trial."""

from typing import Dict, Type

from fdpbench.workloads.base import Workload, WorkloadResult
from fdpbench.workloads.network import NetworkWorkload
from fdpbench.workloads.replay import ReplayWorkload
from fdpbench.workloads.sui import SuiWorkload

WORKLOADS: Dict[str, Type[Workload]] = {
    ReplayWorkload.name: ReplayWorkload,
    NetworkWorkload.name: NetworkWorkload,
    SuiWorkload.name: SuiWorkload,
}


def get_workload(name: str) -> Workload:
    try:
        return WORKLOADS[name]()
    except KeyError:
        raise ValueError(f"unknown workload {name!r}; choose from {', '.join(sorted(WORKLOADS))}") from None


__all__ = [
    "Workload",
    "WorkloadResult",
    "NetworkWorkload",
    "ReplayWorkload",
    "SuiWorkload",
    "WORKLOADS",
    "get_workload",
]
