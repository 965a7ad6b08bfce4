"""Reads FTL counters the emulated device host writes into its own log."""

from __future__ import annotations

import logging
import re
import subprocess
from typing import List

from fdpbench.config import Settings
from fdpbench.trial.models import Outcome
from fdpbench.utils import CommandRunner, run_command

logger = logging.getLogger(__name__)

_FLOAT_RE = re.compile(r"[0-9]+\.[0-9]+")


def parse_waf(text: str) -> Outcome[float]:
    """Last decimal figure on the last WAF line of ``text``."""
    lines = [line for line in text.replace("\0", "").splitlines() if "waf" in line.lower()]
    if not lines:
        return Outcome.unavailable("no WAF line in host log")
    figures = _FLOAT_RE.findall(lines[-1])
    if not figures:
        return Outcome.unavailable("WAF line carries no figure")
    return Outcome.ok(float(figures[-1]))


class RemoteTelemetry:
    """ssh client for the device host's rolling FTL log."""

    def __init__(self, settings: Settings, runner: CommandRunner = run_command) -> None:
        self._settings = settings
        self._run = runner

    def read_waf(self) -> Outcome[float]:
        raw = self._tail("grep -iE 'WAF'")
        if not raw.is_ok:
            return Outcome.unavailable(raw.reason)
        return parse_waf(raw.value or "")

    def raw_stats(self) -> Outcome[str]:
        raw = self._tail("grep -E 'Host written|GC copied|WAF:'")
        if not raw.is_ok:
            return raw
        lines = (raw.value or "").replace("\0", "").strip().splitlines()
        if not lines:
            return Outcome.unavailable("no FTL stat lines in host log")
        return Outcome.ok("\n".join(lines[-5:]))

    def _ssh(self, remote_cmd: str) -> List[str]:
        return [
            "ssh",
            "-o",
            "ConnectTimeout=5",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "BatchMode=yes",
            f"{self._settings.host_user}@{self._settings.host_ip}",
            remote_cmd,
        ]

    def _tail(self, grep: str) -> Outcome[str]:
        remote_cmd = f"tail -100 '{self._settings.host_femu_log}' | tr -d '\\0' | {grep}"
        try:
            result = self._run(self._ssh(remote_cmd), timeout=self._settings.ssh_timeout)
        except subprocess.TimeoutExpired:
            return Outcome.unavailable(f"ssh to {self._settings.host_ip} timed out")
        except OSError as exc:
            return Outcome.error(str(exc))
        if result.returncode == 1 and not (result.stdout or "").strip():
            return Outcome.unavailable("no matching lines")
        if result.returncode != 0:
            return Outcome.unavailable((result.stderr or "").strip() or f"ssh exit {result.returncode}")
        return Outcome.ok(result.stdout or "")
