from __future__ import annotations

import os
import signal
import sys
import time
from typing import List

import pytest

from fdpbench.config import Settings
from fdpbench.metrics.store import read_metrics
from fdpbench.trial.errors import EnvironmentCheckError, ReadinessTimeoutError
from fdpbench.trial.harness import BenchmarkHarness, TrialContext, TrialRunner, signals_as_exit
from fdpbench.trial.models import MetricsRecord, ProcessRole, ShutdownPolicy
from fdpbench.trial.volume import VolumeProvisioner
from fdpbench.workloads.base import Workload, WorkloadResult


class CountingProvisioner(VolumeProvisioner):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.teardowns = 0

    def teardown(self) -> None:
        self.teardowns += 1
        super().teardown()


class StaticWorkload(Workload):
    name = "replay"
    title = "Static"

    def __init__(self, counters=None) -> None:
        self.counters = counters or {"total_blocks": 1000.0, "blocks_per_sec": 50.0}
        self.contexts: List[TrialContext] = []

    def check_prerequisites(self, settings: Settings) -> None:
        pass

    def run(self, ctx: TrialContext) -> WorkloadResult:
        self.contexts.append(ctx)
        (ctx.layout.tier_dir("wal") / "000001.log").write_bytes(b"x" * 2048)
        return WorkloadResult(counters=dict(self.counters), details=["static"])

    def summary_lines(self, record: MetricsRecord, result: WorkloadResult) -> List[str]:
        return [f"Blocks imported: {record.get('total_blocks')}"]


class NeverReadyWorkload(StaticWorkload):
    def run(self, ctx: TrialContext) -> WorkloadResult:
        handle = ctx.supervisor.spawn(
            "node",
            ProcessRole.PRODUCER,
            [sys.executable, "-c", "import time; time.sleep(60)"],
            log_path=ctx.layout.logs_dir / "node.log",
            policy=ShutdownPolicy(grace_seconds=5.0, poll_interval=0.05),
        )
        self.handle = handle
        ctx.supervisor.await_ready(handle, lambda: False, timeout=1.0, interval=0.1)
        return WorkloadResult()


class InterruptedWorkload(StaticWorkload):
    def run(self, ctx: TrialContext) -> WorkloadResult:
        raise SystemExit(143)


def _trial_runner(settings: Settings, workload: Workload, runner) -> TrialRunner:
    runner.on("grep -iE 'WAF'", stdout="FTL stats WAF: 2.41\n")
    runner.on("Host written", stdout="Host written: 100\nGC copied: 41\nWAF: 2.41\n")
    provisioner = CountingProvisioner(settings, runner)
    return TrialRunner(settings, workload, runner=runner, provisioner=provisioner)


def test_trial_writes_metrics_summary_and_logs(make_settings, runner) -> None:
    settings = make_settings()
    trials = _trial_runner(settings, StaticWorkload(), runner)

    record = trials.run("fdp", 8)

    trial_dir = settings.results_dir / "fdp"
    assert record.get("waf") == 2.41
    assert read_metrics(trial_dir) == record
    summary = (trial_dir / "summary.txt").read_text(encoding="utf-8")
    assert "=== Static: fdp (STREAMS=8) ===" in summary
    assert "GC copied: 41" in summary
    assert "p0:" in (trial_dir / "disk_usage.txt").read_text(encoding="utf-8")
    assert "Static: fdp (STREAMS=8)" in (trial_dir / "run.log").read_text(encoding="utf-8")
    assert trials.provisioner.teardowns == 1
    assert runner.commands("mkfs.f2fs")
    assert runner.commands("fdp_f2fs_mount 8")


def test_single_stream_layout_collapses_onto_first_stream(make_settings, runner) -> None:
    settings = make_settings()
    workload = StaticWorkload()
    _trial_runner(settings, workload, runner).run("non-fdp", 1)

    (ctx,) = workload.contexts
    assert ctx.layout.tier_dir("wal").parent.name == "p0"
    assert ctx.layout.tier_dir("ancient").parent.name == "p0"
    assert not ctx.config.placement_enabled


def test_readiness_timeout_aborts_trial_and_cleans_up_once(make_settings, runner) -> None:
    settings = make_settings()
    workload = NeverReadyWorkload()
    trials = _trial_runner(settings, workload, runner)

    with pytest.raises(ReadinessTimeoutError, match="node not ready after 1s"):
        trials.run("fdp", 8)

    assert workload.handle.state.terminal
    assert trials.provisioner.teardowns == 1
    assert not (settings.results_dir / "fdp" / "metrics.txt").exists()


def test_interrupt_during_workload_still_tears_down_once(make_settings, runner) -> None:
    settings = make_settings()
    trials = _trial_runner(settings, InterruptedWorkload(), runner)

    with pytest.raises(SystemExit):
        trials.run("non-fdp", 1)

    assert trials.provisioner.teardowns == 1


def test_rerun_replaces_previous_trial_directory(make_settings, runner) -> None:
    settings = make_settings()
    stale = settings.results_dir / "fdp" / "stale.txt"
    stale.parent.mkdir(parents=True)
    stale.write_text("old", encoding="utf-8")

    _trial_runner(settings, StaticWorkload(), runner).run("fdp", 8)

    assert not stale.exists()


def test_both_mode_pauses_and_writes_comparison(make_settings, runner, fake_clock) -> None:
    settings = make_settings(trial_pause_seconds=10.0)
    trials = _trial_runner(settings, StaticWorkload(), runner)
    harness = BenchmarkHarness(settings, trials.workload, trial_runner=trials, clock=fake_clock)

    report = harness.run("both")

    assert report is not None
    assert report.baseline.label == "non-fdp"
    assert report.treatment.streams == 8
    assert fake_clock.sleeps == [10.0]
    assert (settings.results_dir / "comparison.txt").is_file()
    assert (settings.results_dir / "comparison.json").is_file()
    assert trials.provisioner.teardowns == 2


def test_single_trial_mode_skips_comparison(make_settings, runner, fake_clock) -> None:
    settings = make_settings()
    trials = _trial_runner(settings, StaticWorkload(), runner)
    harness = BenchmarkHarness(settings, trials.workload, trial_runner=trials, clock=fake_clock)

    assert harness.run("treatment") is None
    assert (settings.results_dir / "fdp" / "metrics.txt").is_file()
    assert not (settings.results_dir / "non-fdp").exists()
    assert not (settings.results_dir / "comparison.txt").exists()


def test_termination_signal_becomes_system_exit() -> None:
    before = signal.getsignal(signal.SIGTERM)
    with pytest.raises(SystemExit):
        with signals_as_exit():
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(5)
    assert signal.getsignal(signal.SIGTERM) == before


class MissingBinaryWorkload(StaticWorkload):
    def check_prerequisites(self, settings: Settings) -> None:
        raise EnvironmentCheckError("geth binary not found: /nonexistent/geth")


def test_failed_prerequisites_keep_previous_results(make_settings, runner) -> None:
    settings = make_settings()
    previous = settings.results_dir / "fdp" / "metrics.txt"
    previous.parent.mkdir(parents=True)
    previous.write_text("waf=2.41\n", encoding="utf-8")
    trials = _trial_runner(settings, MissingBinaryWorkload(), runner)

    with pytest.raises(EnvironmentCheckError, match="geth binary not found"):
        trials.run("fdp", 8)

    assert previous.read_text(encoding="utf-8") == "waf=2.41\n"
    assert runner.calls == []
    assert trials.provisioner.teardowns == 0
