"""Mainnet block replay: chunked era1 → RLP → ``geth import`` on the trial volume."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List

from fdpbench.config import Settings
from fdpbench.metrics import parsing
from fdpbench.metrics.extractor import rate
from fdpbench.metrics.store import seconds_display
from fdpbench.pipeline.chunked import run_chunked
from fdpbench.pipeline.era import EraTools
from fdpbench.trial.layout import process_env
from fdpbench.trial.models import Chunk, MetricsRecord
from fdpbench.utils import secs_to_duration
from fdpbench.workloads.base import Workload, WorkloadResult, fmt

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from fdpbench.trial.harness import TrialContext

logger = logging.getLogger(__name__)


class ReplayWorkload(Workload):
    name = "replay"
    title = "Mainnet Replay"

    def check_prerequisites(self, settings: Settings) -> None:
        EraTools(settings).check_prerequisites()

    def describe(self, settings: Settings) -> List[str]:
        return [
            f"Total blocks: {settings.total_blocks} (chunk size: {settings.chunk_blocks})",
            f"Cache: {settings.cache_mb}MB  State scheme: hash  Snapshot: disabled",
        ]

    def run(self, ctx: "TrialContext") -> WorkloadResult:
        settings = ctx.settings
        layout = ctx.layout
        tools = EraTools(settings, ctx.runner)
        import_log = ctx.trial_dir / "import.log"
        tools.era_dir.mkdir(parents=True, exist_ok=True)

        placement = layout.geth_env(
            no_compression=settings.pebble_no_compression,
            memtable_mb=settings.pebble_memtable_mb,
        )
        if layout.streams > 1:
            logger.info(
                "FDP VFS: WAL=%s  FLUSH=%s  L0CMP=%s  MIDCMP=%s",
                layout.tier_dir("wal"),
                layout.tier_dir("flush"),
                layout.tier_dir("l0cmp"),
                layout.tier_dir("midcmp"),
            )
        else:
            logger.info("FDP VFS disabled")
        env = process_env(placement)

        def load(chunk: Chunk) -> None:
            tools.import_blocks(
                chunk.artifact_path,
                data_root=layout.data_root,
                ancient_dir=layout.tier_dir("ancient"),
                log_path=import_log,
                env=env,
            )

        logger.info("═══ Importing blocks (full EVM re-execution, chunked) ═══")
        started = ctx.clock.monotonic()
        chunks = run_chunked(
            ctx.config.total_blocks,
            ctx.config.chunk_blocks,
            start=ctx.config.first_block,
            artifact_for=tools.chunk_artifact,
            fetch=tools.fetch_chunk if settings.fetch_on_demand else None,
            transform=tools.convert_chunk,
            load=load,
            clock=ctx.clock,
        )
        duration = int(ctx.clock.monotonic() - started)
        logger.info("Import of %d chunk(s) complete in %s", len(chunks), secs_to_duration(duration))

        lines = parsing.read_lines(import_log)
        blocks = parsing.last_value("number", lines) or 0.0
        # instantaneous mgasps swings too much across the chain's history; average instead
        total_mgas = parsing.sum_values("mgas", lines) or 0.0
        bps = rate(blocks, duration)
        mgps = rate(total_mgas, duration)
        counters = {
            "total_blocks": blocks,
            "import_duration_s": float(duration),
            "blocks_per_sec": round(bps, 2) if bps is not None else None,
            "mgas_per_sec": round(mgps, 3) if mgps is not None else None,
        }
        return WorkloadResult(
            counters=counters,
            stall_stats=True,
            graceful_logs=(import_log,),
            stall_aggregate="sum",
            details=[f"Chunks: {len(chunks)}"],
        )

    def summary_lines(self, record: MetricsRecord, result: WorkloadResult) -> List[str]:
        duration = record.get("import_duration_s")
        return [
            f"Blocks imported: {fmt(record.get('total_blocks'))}",
            f"Duration: {secs_to_duration(duration) if duration is not None else 'N/A'}",
            f"Blocks/sec: {fmt(record.get('blocks_per_sec'), '.2f')}",
            f"Mgas/sec: {fmt(record.get('mgas_per_sec'), '.3f')}",
            f"WAF: {fmt(record.get('waf'))}",
            f"Write Stalls: {fmt(record.get('stall_count'))} "
            f"(total time: {seconds_display(record.get('stall_time_ms'))})",
            f"Compaction Time: {seconds_display(record.get('compaction_time_ms'))}",
            *result.details,
        ]
