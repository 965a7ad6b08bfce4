"""Trial orchestration: one baseline/treatment run from volume prepare to summary."""

from __future__ import annotations

import logging
import shutil
import signal
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, Literal, Optional, Sequence

from fdpbench.config import Settings
from fdpbench.metrics.compare import ComparisonReport, compare, write_comparison
from fdpbench.metrics.extractor import MetricsExtractor, TrialSources
from fdpbench.metrics.store import read_metrics, read_summary, render_summary, write_metrics, write_summary
from fdpbench.timing import SYSTEM_CLOCK, Clock
from fdpbench.trial.layout import StorageLayout, human_bytes
from fdpbench.trial.models import MetricsRecord, TrialConfig
from fdpbench.trial.remote import RemoteTelemetry
from fdpbench.trial.sampler import TelemetrySampler, volume_capacity_mb
from fdpbench.trial.supervisor import ProcessSupervisor
from fdpbench.trial.volume import VolumeProvisioner
from fdpbench.utils import CommandRunner, run_command
from fdpbench.workloads.base import Workload

logger = logging.getLogger(__name__)

TRIAL_LOG = "run.log"
MONITOR_LOG = "monitor.log"
DISK_USAGE_FILE = "disk_usage.txt"

TrialMode = Literal["baseline", "treatment", "both"]


@dataclass
class TrialContext:
    """Everything a workload may touch while its trial is running."""

    settings: Settings
    config: TrialConfig
    layout: StorageLayout
    provisioner: VolumeProvisioner
    remote: RemoteTelemetry
    supervisor: ProcessSupervisor
    clock: Clock
    runner: CommandRunner
    sampler: Optional[TelemetrySampler] = None

    @property
    def trial_dir(self) -> Path:
        return self.config.trial_dir


def format_disk_usage(usage: Dict[str, int]) -> str:
    if not usage:
        return ""
    return "\n".join(f"  {stream}: {human_bytes(size)}" for stream, size in usage.items())


@contextmanager
def trial_log(path: Path) -> Iterator[logging.Handler]:
    """Mirror every log record into ``path`` for the duration of a trial."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    handler.setLevel(logging.INFO)
    root = logging.getLogger()
    previous_level = root.level
    if root.getEffectiveLevel() > logging.INFO:
        root.setLevel(logging.INFO)
    root.addHandler(handler)
    try:
        yield handler
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()


@contextmanager
def signals_as_exit(signums: Sequence[int] = (signal.SIGTERM, signal.SIGHUP)) -> Iterator[None]:
    """Turn termination signals into ``SystemExit`` so cleanup stacks unwind."""

    def _raise(signum, _frame):
        logger.warning("Received %s; aborting", signal.Signals(signum).name)
        raise SystemExit(128 + signum)

    previous = {}
    for signum in signums:
        try:
            previous[signum] = signal.signal(signum, _raise)
        except ValueError:
            # only the main thread may install handlers
            logger.debug("Cannot install handler for signal %s outside the main thread", signum)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class TrialRunner:
    """Runs one trial of a workload at a given stream count.

    Volume teardown is registered before the volume is prepared and runs
    exactly once however the trial ends. Dependent processes and the
    telemetry sampler are stopped before any metric is extracted.
    """

    def __init__(
        self,
        settings: Settings,
        workload: Workload,
        *,
        runner: CommandRunner = run_command,
        clock: Clock = SYSTEM_CLOCK,
        provisioner: Optional[VolumeProvisioner] = None,
        remote: Optional[RemoteTelemetry] = None,
        supervisor_factory: Optional[Callable[[], ProcessSupervisor]] = None,
        extractor: Optional[MetricsExtractor] = None,
    ) -> None:
        self.settings = settings
        self.workload = workload
        self._runner = runner
        self._clock = clock
        self.provisioner = provisioner or VolumeProvisioner(settings, runner, clock)
        self.remote = remote or RemoteTelemetry(settings, runner)
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._extractor = extractor or MetricsExtractor()

    def _default_supervisor(self) -> ProcessSupervisor:
        ports = self.settings.workload_ports if self.workload.name == "network" else ()
        return ProcessSupervisor(
            clock=self._clock,
            discovery_timeout=self.settings.pid_discovery_timeout,
            reclaim_ports=ports,
        )

    def trial_config(self, label: str, streams: int) -> TrialConfig:
        return TrialConfig(
            label=label,
            streams=streams,
            workload=self.workload.name,
            first_block=0,
            total_blocks=self.settings.total_blocks,
            chunk_blocks=self.settings.chunk_blocks,
            results_dir=self.settings.results_dir,
        )

    def run(self, label: str, streams: int) -> MetricsRecord:
        config = self.trial_config(label, streams)
        trial_dir = config.trial_dir
        # a missing prerequisite must not cost the previous run its results
        self.workload.check_prerequisites(self.settings)
        if trial_dir.exists():
            shutil.rmtree(trial_dir)
        trial_dir.mkdir(parents=True)

        with trial_log(trial_dir / TRIAL_LOG):
            self._banner(config)
            return self._run(config)

    def _banner(self, config: TrialConfig) -> None:
        logger.info("═" * 63)
        logger.info("  %s: %s (STREAMS=%d)", self.workload.title, config.label, config.streams)
        for line in self.workload.describe(self.settings):
            logger.info("  %s", line)
        logger.info("═" * 63)

    def _run(self, config: TrialConfig) -> MetricsRecord:
        settings = self.settings
        trial_dir = config.trial_dir

        layout = StorageLayout(settings.mount_point, config.streams)
        supervisor = self._supervisor_factory()

        with ExitStack() as cleanup:
            cleanup.callback(self._teardown)
            self.provisioner.prepare(config.streams)
            layout.create()
            self.provisioner.reset()

            sampler = TelemetrySampler(
                trial_dir / MONITOR_LOG,
                settings.monitor_interval,
                snapshot=self.provisioner.snapshot,
                read_waf=self.remote.read_waf,
                capacity=volume_capacity_mb(settings.mount_point),
                clock=self._clock,
            )
            ctx = TrialContext(
                settings=settings,
                config=config,
                layout=layout,
                provisioner=self.provisioner,
                remote=self.remote,
                supervisor=supervisor,
                clock=self._clock,
                runner=self._runner,
                sampler=sampler,
            )

            with ExitStack() as running:
                running.callback(supervisor.shutdown)
                running.callback(sampler.stop)
                sampler.start()
                result = self.workload.run(ctx)

            logger.info("Collecting final stats...")
            self.provisioner.snapshot()
            waf = self.remote.read_waf()
            ftl_stats = self.remote.raw_stats()
            disk_usage = format_disk_usage(layout.stream_usage())
            (trial_dir / DISK_USAGE_FILE).write_text(disk_usage + "\n", encoding="utf-8")

            record = self._extractor.extract(
                TrialSources(
                    label=config.label,
                    streams=config.streams,
                    workload=config.workload,
                    counters=result.counters,
                    waf=waf,
                    stall_stats=result.stall_stats,
                    graceful_logs=result.graceful_logs,
                    stall_aggregate=result.stall_aggregate,
                    live=result.live,
                    handles=supervisor.handles,
                )
            )

        write_metrics(record, trial_dir)
        summary = render_summary(
            record,
            title=self.workload.title,
            lines=self.workload.summary_lines(record, result),
            disk_usage=disk_usage,
            ftl_stats=ftl_stats.value_or(""),
        )
        write_summary(summary, trial_dir)
        logger.info("Round '%s' complete. Results in %s", config.label, trial_dir)
        return record

    def _teardown(self) -> None:
        logger.info("Cleaning up trial volume ...")
        self.provisioner.teardown()


class BenchmarkHarness:
    """Baseline and treatment trials back to back, then the comparison report."""

    def __init__(
        self,
        settings: Settings,
        workload: Workload,
        *,
        trial_runner: Optional[TrialRunner] = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.settings = settings
        self.workload = workload
        self.trials = trial_runner or TrialRunner(settings, workload, clock=clock)
        self._clock = clock

    def run(self, mode: TrialMode = "both") -> Optional[ComparisonReport]:
        settings = self.settings
        settings.results_dir.mkdir(parents=True, exist_ok=True)
        with signals_as_exit():
            if mode in ("baseline", "both"):
                self.trials.run(settings.baseline_label, settings.baseline_streams)
            if mode == "both" and settings.trial_pause_seconds > 0:
                logger.info("Pausing %.0fs between trials", settings.trial_pause_seconds)
                self._clock.sleep(settings.trial_pause_seconds)
            if mode in ("treatment", "both"):
                self.trials.run(settings.treatment_label, settings.treatment_streams)
        if mode != "both":
            return None
        logger.info("Both rounds complete; generating comparison ...")
        return self.compare_trials()

    def compare_trials(
        self,
        baseline_dir: Optional[Path] = None,
        treatment_dir: Optional[Path] = None,
    ) -> ComparisonReport:
        settings = self.settings
        baseline_dir = baseline_dir or settings.results_dir / settings.baseline_label
        treatment_dir = treatment_dir or settings.results_dir / settings.treatment_label
        report = compare(read_metrics(baseline_dir), read_metrics(treatment_dir))
        write_comparison(
            report,
            settings.results_dir,
            baseline_summary=read_summary(baseline_dir),
            treatment_summary=read_summary(treatment_dir),
        )
        return report
