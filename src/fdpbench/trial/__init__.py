"""Trial lifecycle: volume, dependent processes, telemetry and orchestration."""

from fdpbench.trial.errors import (
    BenchError,
    EnvironmentCheckError,
    PipelineError,
    ProcessDiedError,
    ProcessStartError,
    ProvisioningError,
    ReadinessTimeoutError,
    SupervisionError,
    WorkloadError,
)
from fdpbench.trial.models import (
    Chunk,
    MetricsRecord,
    Outcome,
    ProcessHandle,
    ProcessRole,
    ProcessState,
    ShutdownPolicy,
    TelemetrySample,
    TrialConfig,
)

__all__ = [
    "BenchError",
    "EnvironmentCheckError",
    "PipelineError",
    "ProcessDiedError",
    "ProcessStartError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "SupervisionError",
    "WorkloadError",
    "Chunk",
    "MetricsRecord",
    "Outcome",
    "ProcessHandle",
    "ProcessRole",
    "ProcessState",
    "ShutdownPolicy",
    "TelemetrySample",
    "TrialConfig",
]
