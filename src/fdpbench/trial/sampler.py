"""Background telemetry sampling while a trial's workload runs."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from fdpbench.timing import SYSTEM_CLOCK, Clock
from fdpbench.trial.models import Outcome, TelemetrySample

logger = logging.getLogger(__name__)


def volume_capacity_mb(mount_point: Path) -> Callable[[], Outcome[float]]:
    """Capacity probe reporting the space used on ``mount_point`` in MiB."""

    def probe() -> Outcome[float]:
        try:
            usage = psutil.disk_usage(str(mount_point))
        except OSError as exc:
            return Outcome.unavailable(str(exc))
        return Outcome.ok(usage.used / (1024 * 1024))

    return probe


def format_sample(sample: TelemetrySample) -> str:
    ts = datetime.fromtimestamp(sample.timestamp).strftime("%Y-%m-%d %H:%M:%S")
    disk = f"{sample.capacity_used_mb:.0f}" if sample.capacity_used_mb is not None else "N/A"
    waf = f"{sample.write_amplification:.2f}" if sample.write_amplification is not None else "N/A"
    return f"{ts}  disk_mb={disk}  waf={waf}"


class TelemetrySampler:
    """Samples device counters on its own thread every ``interval`` seconds.

    The loop waits one interval before each sample. ``stop`` wakes the loop,
    discards a sample still in flight, and joins the thread for at most
    ``join_timeout`` seconds so a hung remote call cannot block teardown.
    """

    def __init__(
        self,
        log_path: Path,
        interval: float,
        *,
        snapshot: Callable[[], Outcome[None]],
        read_waf: Callable[[], Outcome[float]],
        capacity: Callable[[], Outcome[float]],
        clock: Clock = SYSTEM_CLOCK,
        join_timeout: float = 30.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("sampling interval must be positive")
        self._log_path = log_path
        self._interval = interval
        self._snapshot = snapshot
        self._read_waf = read_waf
        self._capacity = capacity
        self._clock = clock
        self._join_timeout = join_timeout

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._samples: List[TelemetrySample] = []
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._closed

    @property
    def samples(self) -> Tuple[TelemetrySample, ...]:
        with self._lock:
            return tuple(self._samples)

    def start(self) -> "TelemetrySampler":
        if self._thread is not None:
            raise RuntimeError("sampler already started")
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._thread = threading.Thread(target=self._run, name="telemetry-sampler", daemon=True)
        self._thread.start()
        logger.info("Background monitor started (interval=%ss, log=%s)", self._interval, self._log_path)
        return self

    def stop(self) -> None:
        """Idempotent. No sample is appended once this returns."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop_event.set()
        if self._thread is None:
            return
        self._thread.join(self._join_timeout)
        if self._thread.is_alive():
            logger.warning("Telemetry sample still in flight after %.0fs; abandoning it", self._join_timeout)
        logger.info("Background monitor stopped after %d sample(s)", len(self._samples))

    def _run(self) -> None:
        while not self._clock.wait(self._stop_event, self._interval):
            try:
                sample = self._take_sample()
            except Exception:  # noqa: BLE001 - sampling must never kill the loop
                logger.exception("Telemetry sample failed")
                continue
            with self._lock:
                if self._closed:
                    return
                self._append(sample)

    def _take_sample(self) -> TelemetrySample:
        self._snapshot()
        waf = self._read_waf()
        capacity = self._capacity()
        timestamp = self._clock.time()
        return TelemetrySample(
            timestamp=timestamp,
            capacity_used_mb=capacity.value if capacity.is_ok else None,
            write_amplification=waf.value if waf.is_ok else None,
        )

    def _append(self, sample: TelemetrySample) -> None:
        if self._samples and sample.timestamp <= self._samples[-1].timestamp:
            sample = TelemetrySample(
                timestamp=self._samples[-1].timestamp + 1e-6,
                capacity_used_mb=sample.capacity_used_mb,
                write_amplification=sample.write_amplification,
            )
        self._samples.append(sample)
        try:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(format_sample(sample) + "\n")
        except OSError as exc:
            logger.warning("Unable to append to %s: %s", self._log_path, exc)
