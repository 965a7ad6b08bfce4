"""Sui single-node benchmark: repeated transaction rounds against one store."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from fdpbench.config import Settings
from fdpbench.trial.errors import EnvironmentCheckError, WorkloadError
from fdpbench.trial.layout import process_env
from fdpbench.trial.models import MetricsRecord
from fdpbench.trial.sampler import volume_capacity_mb
from fdpbench.utils import secs_to_duration, tail_file
from fdpbench.workloads.base import Workload, WorkloadResult, fmt

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from fdpbench.trial.harness import TrialContext

logger = logging.getLogger(__name__)

TPS_PATTERN = re.compile(r"(?:Committed-TPS|Exec-TPS)=([0-9.]+)")


def last_tps(output: str) -> Optional[float]:
    """Last TPS figure the benchmark printed, if any."""
    matches = TPS_PATTERN.findall(output)
    if not matches:
        return None
    try:
        return float(matches[-1])
    except ValueError:
        return None


class SuiWorkload(Workload):
    name = "sui"
    title = "Sui Benchmark"

    def check_prerequisites(self, settings: Settings) -> None:
        if not settings.sui_bench_bin.is_file():
            raise EnvironmentCheckError(
                f"sui-single-node-benchmark not found at {settings.sui_bench_bin}; build it with cargo first"
            )

    def describe(self, settings: Settings) -> List[str]:
        return [
            f"Component: {settings.bench_component}",
            f"Rounds: {settings.num_rounds} × {settings.tx_count * settings.num_batches} TXs",
        ]

    def run(self, ctx: "TrialContext") -> WorkloadResult:
        settings = ctx.settings
        layout = ctx.layout
        store = layout.sui_store_path()
        store.mkdir(parents=True, exist_ok=True)
        env = process_env(layout.sui_env())
        if layout.streams > 1:
            logger.info("FDP env: WAL→p0, SST PRIMARY→p1, SST OVERFLOW→p2")
        else:
            logger.info("Non-FDP: all data to single stream (p7)")

        logger.info("Setup: Creating accounts (baseline mode for speed)...")
        setup_log = ctx.trial_dir / "setup.log"
        setup_cmd = [
            str(settings.sui_bench_bin),
            "--tx-count", str(settings.tx_count),
            "--component", "baseline",
            "--store-path", str(store),
            "ptb", "--num-transfers", str(settings.num_transfers),
        ]  # fmt: skip
        self._invoke(ctx, setup_cmd, env, setup_log, "account setup")

        round_cmd = [
            str(settings.sui_bench_bin),
            "--tx-count", str(settings.tx_count),
            "--num-batches", str(settings.num_batches),
            "--component", settings.bench_component,
            "--store-path", str(store),
            "--append",
            "ptb",
            "--num-transfers", str(settings.num_transfers),
            "--num-mints", str(settings.num_mints),
            "--nft-size", str(settings.nft_size),
        ]  # fmt: skip
        rounds_log = ctx.trial_dir / "rounds.log"
        usage = volume_capacity_mb(settings.mount_point)
        txs_per_round = settings.tx_count * settings.num_batches

        logger.info("Benchmark: Running %d rounds (component=%s)...", settings.num_rounds, settings.bench_component)
        started = ctx.clock.monotonic()
        durations: List[int] = []
        tps_values: List[Optional[float]] = []
        for round_no in range(1, settings.num_rounds + 1):
            round_start = ctx.clock.monotonic()
            output = self._invoke(ctx, round_cmd, env, rounds_log, f"round {round_no}", capture=True)
            duration = int(ctx.clock.monotonic() - round_start)
            tps = last_tps(output)
            durations.append(duration)
            tps_values.append(tps)
            logger.info(
                "  Round %d/%d: %ds  TPS=%s  (%ds total)",
                round_no,
                settings.num_rounds,
                duration,
                fmt(tps) if tps is not None else "n/a",
                int(round_start - started),
            )
            if round_no % 3 == 0:
                used = usage()
                if used.is_ok:
                    logger.info("  Volume usage: %.0f MiB", used.value)

        total_seconds = int(ctx.clock.monotonic() - started)
        total_txs = txs_per_round * settings.num_rounds
        reported = [value for value in tps_values if value is not None]
        counters: Dict[str, Optional[float]] = {
            "num_rounds": float(settings.num_rounds),
            "total_txs": float(total_txs),
            "duration_s": float(total_seconds),
            "avg_tps": float(int(sum(reported) / len(reported))) if reported else 0.0,
            "committed_tps": float(total_txs // total_seconds) if total_seconds > 0 else 0.0,
            "min_round_s": float(min(durations)),
            "max_round_s": float(max(durations)),
        }
        details = [
            f"  Round {index}: {duration}s  TPS={fmt(tps) if tps is not None else 0}"
            for index, (duration, tps) in enumerate(zip(durations, tps_values), start=1)
        ]
        return WorkloadResult(counters=counters, details=details)

    def summary_lines(self, record: MetricsRecord, result: WorkloadResult) -> List[str]:
        duration = record.get("duration_s")
        return [
            f"Rounds: {fmt(record.get('num_rounds'))}",
            f"Duration: {secs_to_duration(duration) if duration is not None else 'N/A'}",
            f"Total TXs: {fmt(record.get('total_txs'))}",
            f"Avg TPS: {fmt(record.get('avg_tps'))}",
            f"Committed TPS: {fmt(record.get('committed_tps'))}",
            f"WAF: {fmt(record.get('waf'))}",
            f"Round latency: min={fmt(record.get('min_round_s'))}s  max={fmt(record.get('max_round_s'))}s",
            "",
            "--- Per-Round ---",
            *result.details,
        ]

    def _invoke(
        self,
        ctx: "TrialContext",
        cmd: List[str],
        env: Dict[str, str],
        log_path: Path,
        step: str,
        *,
        capture: bool = False,
    ) -> str:
        try:
            if capture:
                result = ctx.runner(cmd, env=env)
            else:
                result = ctx.runner(cmd, env=env, output=log_path)
        except OSError as exc:
            raise WorkloadError(f"sui benchmark {step} failed to start: {exc}") from exc
        except subprocess.SubprocessError as exc:
            raise WorkloadError(f"sui benchmark {step} failed: {exc}") from exc

        output = ""
        if capture:
            output = (result.stdout or "") + (result.stderr or "")
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(output)
        if result.returncode != 0:
            raise WorkloadError(
                f"sui benchmark {step} exited with status {result.returncode}",
                log_tail=tail_file(log_path),
            )
        return output
