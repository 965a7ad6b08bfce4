"""Lifecycle management for the per-trial F2FS volume."""

from __future__ import annotations

import logging
import subprocess
from typing import List, Optional, Sequence

from fdpbench.config import Settings
from fdpbench.timing import SYSTEM_CLOCK, Clock
from fdpbench.trial.errors import ProvisioningError
from fdpbench.trial.models import Outcome
from fdpbench.utils import CommandRunner, run_command

logger = logging.getLogger(__name__)

_NOT_MOUNTED_MARKERS = ("not mounted", "no mount point", "no such file", "not found")


class VolumeProvisioner:
    """Format, mount, reset counters on, and tear down the trial device."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner = run_command,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._settings = settings
        self._run = runner
        self._clock = clock
        self._mounted = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    def prepare(self, streams: int) -> None:
        if streams <= 0:
            raise ValueError(f"stream count must be positive, got {streams}")

        mount_point = self._settings.mount_point
        logger.info("Unmounting %s (if mounted)", mount_point)
        self._unmount()
        self._clock.sleep(min(1.0, self._settings.settle_seconds))

        logger.info("Formatting F2FS on %s", self._settings.nvme_dev)
        mkfs = self._settings.fdp_tools / "mkfs" / "mkfs.f2fs"
        self._checked([str(mkfs), "-f", "-O", "lost_found", self._settings.nvme_dev], "format")

        logger.info("Mounting with %s stream(s)", streams)
        mount = self._settings.fdp_tools / "fdp_f2fs_mount"
        self._checked([str(mount), str(streams)], "mount")
        self._mounted = True

        self._checked(["chmod", "-R", "777", str(mount_point)], "chmod")

    def teardown(self) -> None:
        self._best_effort(["sh", "-c", "sync; echo 3 > /proc/sys/vm/drop_caches"])
        self._unmount()
        self._mounted = False

    def reset(self) -> Outcome[None]:
        """Zero the device FTL counters."""
        logger.info("Resetting FTL counters")
        outcome = self._best_effort([str(self._settings.fdp_stats), self._settings.nvme_dev, "--reset"])
        if not outcome.is_ok:
            logger.warning("Counter reset unavailable: %s", outcome.reason)
        self._clock.sleep(self._settings.settle_seconds)
        return outcome

    def snapshot(self) -> Outcome[None]:
        """Ask the device to print its counters into the remote host log."""
        outcome = self._best_effort([str(self._settings.fdp_stats), self._settings.nvme_dev, "--read-only"])
        if not outcome.is_ok:
            logger.debug("Counter snapshot unavailable: %s", outcome.reason)
        self._clock.sleep(self._settings.settle_seconds)
        return outcome

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------
    def _cmd(self, cmd: Sequence[str]) -> List[str]:
        return (["sudo"] if self._settings.use_sudo else []) + list(cmd)

    def _unmount(self) -> None:
        outcome = self._best_effort(["umount", str(self._settings.mount_point)])
        if not outcome.is_ok and not _is_not_mounted(outcome.reason):
            logger.warning("umount %s: %s", self._settings.mount_point, outcome.reason)

    def _checked(self, cmd: Sequence[str], step: str) -> None:
        try:
            result = self._run(self._cmd(cmd))
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProvisioningError(f"{step} failed: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise ProvisioningError(f"{step} failed (exit {result.returncode}): {detail}")

    def _best_effort(self, cmd: Sequence[str]) -> Outcome[None]:
        timeout = self._settings.device_tool_timeout
        try:
            result = self._run(self._cmd(cmd), timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("%s did not finish within %.0fs", cmd[0], timeout)
            return Outcome.unavailable(f"timed out after {timeout:.0f}s")
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("best-effort command %s failed: %s", cmd[0], exc)
            return Outcome.error(str(exc))
        if result.returncode != 0:
            reason: Optional[str] = (result.stderr or result.stdout or "").strip()
            return Outcome.error(reason or f"exit {result.returncode}")
        return Outcome.ok(None)


def _is_not_mounted(reason: str) -> bool:
    lowered = reason.lower()
    return any(marker in lowered for marker in _NOT_MOUNTED_MARKERS)
