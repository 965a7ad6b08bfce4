from __future__ import annotations

import os
import signal
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import List

import psutil
import pytest

from fdpbench.timing import Deadline, SystemClock, ticks
from fdpbench.trial import supervisor as supervisor_module
from fdpbench.trial.errors import ProcessDiedError, ProcessStartError, ReadinessTimeoutError
from fdpbench.trial.models import ProcessRole, ProcessState, ShutdownPolicy
from fdpbench.trial.supervisor import ProcessSupervisor, reclaim_ports

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]
STUBBORN = [
    sys.executable,
    "-c",
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ignoring', flush=True)\n"
    "time.sleep(60)\n",
]
QUICK_POLICY = ShutdownPolicy(grace_seconds=5.0, poll_interval=0.05)


@pytest.fixture
def supervisor():
    sup = ProcessSupervisor(discovery_timeout=1.0)
    yield sup
    sup.shutdown()


def _log_contains(path: Path, text: str):
    def probe() -> bool:
        return path.exists() and text in path.read_text(encoding="utf-8", errors="replace")

    return probe


def test_ready_process_runs_and_stops_gracefully(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    handle = supervisor.spawn("node", ProcessRole.PRODUCER, SLEEPER, log_path=tmp_path / "node.log", policy=QUICK_POLICY)
    supervisor.await_ready(handle, lambda: True, timeout=5.0, interval=0.1)
    assert handle.state is ProcessState.RUNNING
    assert supervisor.is_alive(handle)

    supervisor.shutdown()

    assert handle.state is ProcessState.TERMINATED
    assert not supervisor.is_alive(handle)


def test_process_exiting_before_ready_is_reported_as_died(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    cmd = [sys.executable, "-c", "print('fatal: bad genesis', flush=True); raise SystemExit(3)"]
    handle = supervisor.spawn("node", ProcessRole.PRODUCER, cmd, log_path=tmp_path / "node.log")

    with pytest.raises(ProcessDiedError, match="exited unexpectedly") as excinfo:
        supervisor.await_ready(handle, lambda: False, timeout=10.0, interval=0.1)

    assert handle.state is ProcessState.TERMINATED
    assert "bad genesis" in excinfo.value.log_tail


def test_live_process_that_never_becomes_ready_times_out(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    handle = supervisor.spawn("node", ProcessRole.PRODUCER, SLEEPER, log_path=tmp_path / "node.log", policy=QUICK_POLICY)

    with pytest.raises(ReadinessTimeoutError, match="node not ready after 1s"):
        supervisor.await_ready(handle, lambda: False, timeout=1.0, interval=0.1)

    assert handle.state is ProcessState.READY_PROBE_PENDING
    assert supervisor.is_alive(handle)


def test_process_ignoring_graceful_signal_is_force_killed(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    log_path = tmp_path / "stubborn.log"
    policy = ShutdownPolicy(grace_seconds=0.5, poll_interval=0.05)
    handle = supervisor.spawn("stubborn", ProcessRole.CONSUMER, STUBBORN, log_path=log_path, policy=policy)
    supervisor.await_ready(handle, _log_contains(log_path, "ignoring"), timeout=10.0, interval=0.05)

    supervisor.shutdown()

    assert handle.state is ProcessState.FORCE_KILLED
    assert not supervisor.is_alive(handle)


def test_shutdown_is_idempotent(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    handle = supervisor.spawn("node", ProcessRole.PRODUCER, SLEEPER, log_path=tmp_path / "node.log", policy=QUICK_POLICY)

    supervisor.shutdown()
    supervisor.shutdown()

    assert handle.state is ProcessState.TERMINATED


def test_shutdown_signals_dependents_before_producer(
    supervisor: ProcessSupervisor, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    spawned = [
        ("producer", ProcessRole.PRODUCER),
        ("consumer-a", ProcessRole.CONSUMER),
        ("client", ProcessRole.BENCHMARK_CLIENT),
        ("consumer-b", ProcessRole.CONSUMER),
    ]
    for name, role in spawned:
        supervisor.spawn(name, role, SLEEPER, log_path=tmp_path / f"{name}.log", policy=QUICK_POLICY)

    order: List[str] = []
    original = supervisor._stop_one

    def recording_stop(handle):
        order.append(handle.name)
        original(handle)

    monkeypatch.setattr(supervisor, "_stop_one", recording_stop)
    supervisor.shutdown()

    assert order == ["client", "consumer-b", "consumer-a", "producer"]
    assert all(handle.state.terminal for handle in supervisor.handles)


def test_partial_shutdown_leaves_other_processes_running(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    producer = supervisor.spawn("producer", ProcessRole.PRODUCER, SLEEPER, log_path=tmp_path / "p.log", policy=QUICK_POLICY)
    client = supervisor.spawn(
        "client", ProcessRole.BENCHMARK_CLIENT, SLEEPER, log_path=tmp_path / "c.log", policy=QUICK_POLICY
    )

    supervisor.shutdown([client])

    assert client.state is ProcessState.TERMINATED
    assert producer.state is ProcessState.SPAWNED
    assert supervisor.is_alive(producer)


def test_missing_binary_raises_start_error(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    with pytest.raises(ProcessStartError, match="failed to launch"):
        supervisor.spawn("ghost", ProcessRole.PRODUCER, [str(tmp_path / "no-such-binary")], log_path=tmp_path / "g.log")
    assert supervisor.handles == []


def test_pid_discovery_prefers_matching_launcher(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    cmd = [*SLEEPER, "beacon_node-marker-7f3a"]
    handle = supervisor.spawn(
        "beacon", ProcessRole.CONSUMER, cmd, log_path=tmp_path / "bn.log", match=r"beacon_node-marker-7f3a"
    )
    assert handle.launcher is not None
    assert handle.pid == handle.launcher.pid


def test_pid_discovery_failure_raises_start_error(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    cmd = [sys.executable, "-c", "print('wrapper exited', flush=True)"]
    with pytest.raises(ProcessStartError, match="no process matching") as excinfo:
        supervisor.spawn("vc", ProcessRole.CONSUMER, cmd, log_path=tmp_path / "vc.log", match=r"unmatched-pattern-5e1c")
    assert "wrapper exited" in excinfo.value.log_tail


def test_ticks_stop_at_deadline(fake_clock) -> None:
    deadline = Deadline(1.0, fake_clock)
    attempts = list(ticks(deadline, 0.3, fake_clock))
    assert attempts == [0, 1, 2, 3]
    assert fake_clock.sleeps == pytest.approx([0.3, 0.3, 0.3, 0.1])


class InterruptingClock(SystemClock):
    """Real time, except the next sleep raises ``KeyboardInterrupt`` once armed."""

    def __init__(self) -> None:
        self.armed = False

    def sleep(self, seconds: float) -> None:
        if self.armed:
            self.armed = False
            raise KeyboardInterrupt
        super().sleep(seconds)


def test_shutdown_interrupted_during_grace_wait_can_be_resumed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    reclaimed: List[tuple] = []
    monkeypatch.setattr(supervisor_module, "reclaim_ports", lambda ports: reclaimed.append(tuple(ports)) or [])
    clock = InterruptingClock()
    sup = ProcessSupervisor(clock=clock, discovery_timeout=1.0, reclaim_ports=(8545,))
    log_path = tmp_path / "geth.log"
    policy = ShutdownPolicy(grace_seconds=0.5, poll_interval=0.05)
    handle = sup.spawn("geth", ProcessRole.PRODUCER, STUBBORN, log_path=log_path, policy=policy)
    try:
        sup.await_ready(handle, _log_contains(log_path, "ignoring"), timeout=10.0, interval=0.05)

        clock.armed = True
        with pytest.raises(KeyboardInterrupt):
            sup.shutdown()
        assert handle.state is ProcessState.SIGNALED
        assert reclaimed == []

        sup.shutdown()

        assert handle.state is ProcessState.FORCE_KILLED
        assert not sup.is_alive(handle)
        assert reclaimed == [(8545,)]
    finally:
        if not handle.state.terminal:
            os.kill(handle.pid, signal.SIGKILL)


def test_process_dying_before_ready_is_reaped(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    cmd = [sys.executable, "-c", "raise SystemExit(3)"]
    handle = supervisor.spawn("node", ProcessRole.PRODUCER, cmd, log_path=tmp_path / "node.log")

    with pytest.raises(ProcessDiedError):
        supervisor.await_ready(handle, lambda: False, timeout=10.0, interval=0.1)

    assert handle.launcher is not None
    assert handle.launcher.returncode == 3


def test_full_shutdown_reclaims_ports_even_after_graceful_exit(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    reclaimed: List[tuple] = []
    monkeypatch.setattr(supervisor_module, "reclaim_ports", lambda ports: reclaimed.append(tuple(ports)) or [])
    sup = ProcessSupervisor(discovery_timeout=1.0, reclaim_ports=(8545, 30303))
    client = sup.spawn("client", ProcessRole.BENCHMARK_CLIENT, SLEEPER, log_path=tmp_path / "c.log", policy=QUICK_POLICY)
    producer = sup.spawn("producer", ProcessRole.PRODUCER, SLEEPER, log_path=tmp_path / "p.log", policy=QUICK_POLICY)

    sup.shutdown([client])
    assert reclaimed == []

    sup.shutdown()
    assert producer.state is ProcessState.TERMINATED
    assert reclaimed == [(8545, 30303)]


def _conn(port, pid):
    return SimpleNamespace(laddr=SimpleNamespace(port=port) if port else (), pid=pid)


def test_reclaim_ports_kills_only_listeners_on_workload_ports(monkeypatch: pytest.MonkeyPatch) -> None:
    connections = [
        _conn(8545, 4242),
        _conn(30303, 4242),
        _conn(22, 77),
        _conn(None, 88),
        _conn(9000, None),
        _conn(9000, os.getpid()),
    ]
    killed: List[int] = []

    class FakeProcess:
        def __init__(self, pid: int) -> None:
            self.pid = pid

        def kill(self) -> None:
            killed.append(self.pid)

    monkeypatch.setattr(supervisor_module.psutil, "net_connections", lambda kind: connections)
    monkeypatch.setattr(supervisor_module.psutil, "Process", FakeProcess)

    assert reclaim_ports([8545, 30303, 9000]) == [4242]
    assert killed == [4242]


def test_reclaim_ports_without_socket_access_is_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    def denied(kind):
        raise psutil.AccessDenied()

    monkeypatch.setattr(supervisor_module.psutil, "net_connections", denied)
    assert reclaim_ports([8545]) == []
