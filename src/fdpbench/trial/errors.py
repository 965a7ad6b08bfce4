"""Fatal error classes raised by the trial components."""

from __future__ import annotations


class BenchError(RuntimeError):
    """Base class for errors that abort a trial.

    ``log_tail`` holds the last lines of the most relevant log, printed on abort.
    """

    def __init__(self, message: str, *, log_tail: str = "") -> None:
        super().__init__(message)
        self.log_tail = log_tail


class EnvironmentCheckError(BenchError):
    """A binary or prerequisite file is missing; raised before provisioning."""


class ProvisioningError(BenchError):
    """Format or mount of the trial volume failed."""


class PipelineError(BenchError):
    """A chunk produced no artifact or could not be loaded."""


class SupervisionError(BenchError):
    pass


class ProcessStartError(SupervisionError):
    """No PID could be found after a detached launch."""


class ProcessDiedError(SupervisionError):
    """The process exited before its readiness probe succeeded."""


class ReadinessTimeoutError(SupervisionError):
    """The process stayed alive but never passed its readiness probe."""


class WorkloadError(BenchError):
    """A benchmark client or workload step exited with a failure."""
