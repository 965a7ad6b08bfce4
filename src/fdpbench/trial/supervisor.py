"""Lifecycle supervision for long-running dependent processes."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

import httpx
import psutil

from fdpbench.timing import SYSTEM_CLOCK, Clock, Deadline, ticks
from fdpbench.trial.errors import ProcessDiedError, ProcessStartError, ReadinessTimeoutError
from fdpbench.trial.models import (
    SHUTDOWN_PRIORITY,
    ProcessHandle,
    ProcessRole,
    ProcessState,
    ShutdownPolicy,
)
from fdpbench.utils import tail_file

logger = logging.getLogger(__name__)


def http_probe(url: str, *, json_rpc_method: Optional[str] = None, timeout: float = 5.0) -> Callable[[], bool]:
    """Readiness probe: GET ``url`` (or POST a JSON-RPC call) and expect a 2xx."""

    def probe() -> bool:
        try:
            if json_rpc_method:
                payload = {"jsonrpc": "2.0", "method": json_rpc_method, "params": [], "id": 1}
                response = httpx.post(url, json=payload, timeout=timeout)
            else:
                response = httpx.get(url, timeout=timeout)
        except httpx.HTTPError:
            return False
        return response.is_success

    return probe


class ProcessSupervisor:
    """Spawn, readiness-gate and stop dependent processes.

    Processes are launched in their own session so a hangup of the
    orchestrator's terminal never reaches them. When the launched command
    forks away (``setsid -f``, wrapper scripts), the real PID is found by
    matching the process table against a pattern.
    """

    def __init__(
        self,
        *,
        clock: Clock = SYSTEM_CLOCK,
        discovery_timeout: float = 5.0,
        reclaim_ports: Sequence[int] = (),
    ) -> None:
        self._clock = clock
        self._discovery_timeout = discovery_timeout
        self._reclaim_ports = tuple(reclaim_ports)
        self._handles: List[ProcessHandle] = []

    @property
    def handles(self) -> List[ProcessHandle]:
        return list(self._handles)

    def spawn(
        self,
        name: str,
        role: ProcessRole,
        command: Sequence[str],
        *,
        log_path: Path,
        env: Optional[Mapping[str, str]] = None,
        match: Optional[str] = None,
        policy: Optional[ShutdownPolicy] = None,
    ) -> ProcessHandle:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        launched_at = self._clock.time()
        with log_path.open("ab") as log_handle:
            try:
                launcher = subprocess.Popen(
                    [str(part) for part in command],
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=dict(env) if env is not None else None,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ProcessStartError(f"{name} failed to launch: {exc}") from exc

        pid = launcher.pid
        if match:
            found = self._discover_pid(match, launcher_pid=launcher.pid, launched_at=launched_at)
            if found is None:
                raise ProcessStartError(
                    f"{name} failed to start: no process matching {match!r}",
                    log_tail=tail_file(log_path),
                )
            pid = found

        handle = ProcessHandle(
            name=name,
            role=role,
            pid=pid,
            start_time=launched_at,
            log_path=log_path,
            shutdown_policy=policy or ShutdownPolicy(),
            launcher=launcher,
        )
        self._handles.append(handle)
        logger.info("%s started (PID=%s, role=%s, session-isolated)", name, pid, role.value)
        return handle

    def await_ready(self, handle: ProcessHandle, probe: Callable[[], bool], timeout: float, interval: float = 1.0) -> None:
        handle.readiness_probe = probe
        handle.advance(ProcessState.READY_PROBE_PENDING)
        deadline = Deadline(timeout, self._clock)
        for _ in ticks(deadline, interval, self._clock):
            if probe():
                handle.advance(ProcessState.RUNNING)
                logger.info("%s is ready", handle.name)
                return
            if not self.is_alive(handle):
                handle.advance(ProcessState.TERMINATED)
                self._reap(handle)
                raise ProcessDiedError(
                    f"{handle.name} exited unexpectedly before becoming ready",
                    log_tail=tail_file(handle.log_path),
                )
        raise ReadinessTimeoutError(
            f"{handle.name} not ready after {timeout:.0f}s",
            log_tail=tail_file(handle.log_path),
        )

    def is_alive(self, handle: ProcessHandle) -> bool:
        launcher = handle.launcher
        if launcher is not None and launcher.pid == handle.pid:
            return launcher.poll() is None
        try:
            proc = psutil.Process(handle.pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def shutdown(self, handles: Optional[Iterable[ProcessHandle]] = None) -> None:
        """Stop ``handles`` (default: every spawned handle), dependents first.

        Idempotent: handles already in a terminal state are not signaled again.
        A full shutdown (no ``handles`` given) ends with a port-based reclaim
        of orphans, whether or not every handle exited gracefully.
        """
        full = handles is None
        targets = list(self._handles) if full else list(handles)
        spawn_order = {id(handle): index for index, handle in enumerate(self._handles)}
        targets.sort(key=lambda h: (SHUTDOWN_PRIORITY[h.role], -spawn_order.get(id(h), 0)))

        for handle in targets:
            if handle.state.terminal:
                continue
            self._stop_one(handle)

        if full and self._reclaim_ports:
            reclaim_ports(self._reclaim_ports)

    def _stop_one(self, handle: ProcessHandle) -> None:
        policy = handle.shutdown_policy
        if not self.is_alive(handle):
            handle.advance(ProcessState.TERMINATED)
            self._reap(handle)
            return

        if handle.state is ProcessState.SIGNALED:
            # an interrupted earlier shutdown already sent the graceful signal
            logger.info("%s already signaled, resuming grace wait", handle.name)
        else:
            _send_signal(handle.pid, policy.graceful_signal)
            handle.advance(ProcessState.SIGNALED)

        deadline = Deadline(policy.grace_seconds, self._clock)
        for _ in ticks(deadline, policy.poll_interval, self._clock):
            if not self.is_alive(handle):
                handle.advance(ProcessState.TERMINATED)
                logger.info("%s exited after signal %s", handle.name, policy.graceful_signal)
                self._reap(handle)
                return

        if not self.is_alive(handle):
            handle.advance(ProcessState.TERMINATED)
            self._reap(handle)
            return

        logger.warning("%s did not exit within %.0fs, sending SIGKILL", handle.name, policy.grace_seconds)
        _send_signal(handle.pid, signal.SIGKILL, group=True)
        handle.advance(ProcessState.FORCE_KILLED)
        self._reap(handle)

    def _reap(self, handle: ProcessHandle) -> None:
        launcher = handle.launcher
        if launcher is None:
            return
        try:
            launcher.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("Launcher for %s (PID=%s) did not exit", handle.name, launcher.pid)

    def _discover_pid(self, pattern: str, *, launcher_pid: int, launched_at: float) -> Optional[int]:
        regex = re.compile(pattern)
        deadline = Deadline(self._discovery_timeout, self._clock)
        for _ in ticks(deadline, 0.5, self._clock):
            if _cmdline_matches(launcher_pid, regex):
                return launcher_pid
            # processes older than the launch belong to an earlier trial
            pid = find_process(regex, exclude=(os.getpid(),), created_after=launched_at - 1.0)
            if pid is not None:
                return pid
        return None


def find_process(
    regex: "re.Pattern[str]",
    *,
    exclude: Sequence[int] = (),
    created_after: Optional[float] = None,
) -> Optional[int]:
    """Lowest PID whose command line matches ``regex`` (``pgrep -f`` semantics)."""
    matches: List[int] = []
    for proc in psutil.process_iter(["pid", "cmdline", "create_time"]):
        info = proc.info
        cmdline = info.get("cmdline") or []
        if info["pid"] in exclude or not cmdline:
            continue
        if created_after is not None and (info.get("create_time") or 0.0) < created_after:
            continue
        if regex.search(" ".join(cmdline)):
            matches.append(info["pid"])
    return min(matches) if matches else None


def _cmdline_matches(pid: int, regex: "re.Pattern[str]") -> bool:
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        return bool(regex.search(" ".join(proc.cmdline())))
    except psutil.Error:
        return False


def reclaim_ports(ports: Iterable[int]) -> List[int]:
    """Kill whatever still listens on ``ports``; return the PIDs signaled."""
    wanted = set(ports)
    killed: List[int] = []
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        logger.warning("Not permitted to inspect sockets; skipping port reclaim for %s", sorted(wanted))
        return killed
    for conn in connections:
        if not conn.laddr or conn.laddr.port not in wanted or not conn.pid:
            continue
        if conn.pid == os.getpid() or conn.pid in killed:
            continue
        try:
            psutil.Process(conn.pid).kill()
            killed.append(conn.pid)
            logger.warning("Killed orphan PID %s holding port %s", conn.pid, conn.laddr.port)
        except psutil.Error as exc:
            logger.warning("Unable to kill PID %s on port %s: %s", conn.pid, conn.laddr.port, exc)
    return killed


def _send_signal(pid: int, signum: int, *, group: bool = False) -> None:
    try:
        if group and os.getpgid(pid) == pid:
            os.killpg(pid, signum)
        else:
            os.kill(pid, signum)
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        logger.warning("Not permitted to signal PID %s: %s", pid, exc)
