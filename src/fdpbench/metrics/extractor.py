"""Assemble one canonical metrics record per trial from heterogeneous sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple

import httpx

from fdpbench.metrics import parsing
from fdpbench.trial.models import MetricsRecord, Outcome, ProcessHandle

logger = logging.getLogger(__name__)

SOURCE_GRACEFUL = "graceful-log"
SOURCE_LIVE = "live-scrape"
SOURCE_REMOTE = "remote-log"
SOURCE_MEASURED = "measured"
SOURCE_UNAVAILABLE = "unavailable"

# geth debug-endpoint names for the chaindata Pebble instance
LIVE_STALL_L0 = "eth/db/chaindata/stall/count/L0"
LIVE_STALL_MEMTABLE = "eth/db/chaindata/stall/count/memtable"
LIVE_COMPACT_L0 = "eth/db/chaindata/compact/level0"
LIVE_COMPACT_NON_L0 = "eth/db/chaindata/compact/nonlevel0"


def rate(count: Optional[float], elapsed_seconds: float) -> Optional[float]:
    """``count`` per second of ``elapsed_seconds``, with elapsed floored at 1."""
    if count is None:
        return None
    return count / max(elapsed_seconds, 1.0)


def scrape_live_metrics(url: str, *, timeout: float = 5.0, save_to: Optional[Path] = None) -> Outcome[Dict[str, float]]:
    """Read storage-engine counters from a running node's metrics endpoint."""
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Could not scrape metrics endpoint %s (process may already be down): %s", url, exc)
        return Outcome.unavailable(str(exc))

    text = response.text
    if save_to is not None:
        try:
            save_to.write_text(text, encoding="utf-8")
        except OSError as exc:
            logger.warning("Unable to save raw metrics to %s: %s", save_to, exc)

    stall_l0 = parsing.prometheus_value(text, LIVE_STALL_L0) or 0.0
    stall_mem = parsing.prometheus_value(text, LIVE_STALL_MEMTABLE) or 0.0
    counters = {
        "stall_count": stall_l0 + stall_mem,
        "stall_time_ms": 0.0,
        "compaction_time_ms": 0.0,
        "level0_compactions": parsing.prometheus_value(text, LIVE_COMPACT_L0) or 0.0,
        "non_level0_compactions": parsing.prometheus_value(text, LIVE_COMPACT_NON_L0) or 0.0,
    }
    logger.info(
        "Live metrics scraped: stalls=%.0f (L0=%.0f mem=%.0f), L0comp=%.0f, nonL0comp=%.0f",
        counters["stall_count"],
        stall_l0,
        stall_mem,
        counters["level0_compactions"],
        counters["non_level0_compactions"],
    )
    return Outcome.ok(counters)


@dataclass
class TrialSources:
    """Everything a trial observed, handed to the extractor once all processes stopped.

    ``counters`` are values the workload measured itself. Storage-engine stall
    counters are looked up in ``graceful_logs`` first, then ``live``.
    """

    label: str
    streams: int
    workload: str
    counters: Mapping[str, Optional[float]] = field(default_factory=dict)
    waf: Outcome[float] = field(default_factory=lambda: Outcome.unavailable("not collected"))
    stall_stats: bool = False
    graceful_logs: Sequence[Path] = ()
    stall_aggregate: Literal["last", "sum"] = "last"
    live: Optional[Outcome[Dict[str, float]]] = None
    handles: Sequence[ProcessHandle] = ()


class MetricsExtractor:
    """Source precedence: graceful-shutdown log, then live scrape, then unavailable."""

    def extract(self, sources: TrialSources) -> MetricsRecord:
        running = [handle.name for handle in sources.handles if not handle.state.terminal]
        if running:
            raise ValueError(f"metrics requested while processes still running: {', '.join(running)}")

        metrics: Dict[str, Optional[float]] = dict(sources.counters)
        provenance: Dict[str, str] = {key: SOURCE_MEASURED for key in metrics}

        if sources.stall_stats:
            stall, origin = self.stall_stats(sources)
            metrics.update(stall)
            provenance.update({key: origin for key in stall})
            compactions = self._live_compactions(sources.live)
            if compactions is not None:
                metrics.update(compactions)
                provenance.update(
                    {key: SOURCE_LIVE if value is not None else SOURCE_UNAVAILABLE for key, value in compactions.items()}
                )

        if sources.waf.is_ok:
            metrics["waf"] = sources.waf.value
            provenance["waf"] = SOURCE_REMOTE
        else:
            logger.warning("WAF unavailable for %s: %s", sources.label, sources.waf.reason or "no data")
            metrics["waf"] = None
            provenance["waf"] = SOURCE_UNAVAILABLE

        return MetricsRecord(
            label=sources.label,
            streams=sources.streams,
            workload=sources.workload,
            metrics=metrics,
            sources=provenance,
        )

    def stall_stats(self, sources: TrialSources) -> Tuple[Dict[str, Optional[float]], str]:
        lines: List[str] = []
        for path in sources.graceful_logs:
            lines.extend(parsing.read_lines(path))
        graceful = parsing.graceful_stall_stats(lines, aggregate=sources.stall_aggregate)
        if graceful is not None:
            logger.info(
                "Stall stats from graceful close: count=%.0f time=%.0fms compaction=%.0fms",
                graceful["stall_count"],
                graceful["stall_time_ms"],
                graceful["compaction_time_ms"],
            )
            return dict(graceful), SOURCE_GRACEFUL

        live = sources.live
        if live is not None and live.is_ok and live.value is not None:
            logger.warning(
                "Graceful stall counters unavailable (process did not close cleanly); "
                "using live scrape: count=%.0f",
                live.value.get("stall_count", 0.0),
            )
            return {key: live.value.get(key, 0.0) for key in parsing.STALL_KEYS}, SOURCE_LIVE

        logger.warning("No write stall stats available: no graceful close line and no live scrape")
        return {key: None for key in parsing.STALL_KEYS}, SOURCE_UNAVAILABLE

    def _live_compactions(self, live: Optional[Outcome[Dict[str, float]]]) -> Optional[Dict[str, Optional[float]]]:
        if live is None:
            return None
        keys = ("level0_compactions", "non_level0_compactions")
        if live.is_ok and live.value is not None:
            return {key: live.value.get(key, 0.0) for key in keys}
        return {key: None for key in keys}
