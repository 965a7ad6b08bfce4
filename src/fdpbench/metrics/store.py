"""Persisted per-trial artifacts: ``metrics.txt`` (key=value) and ``summary.txt``."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, Iterable, Optional

from fdpbench.metrics.parsing import parse_number
from fdpbench.trial.models import MetricsRecord
from fdpbench.utils import current_timestamp

logger = logging.getLogger(__name__)

UNAVAILABLE = "N/A"
METRICS_FILE = "metrics.txt"
SUMMARY_FILE = "summary.txt"
_HEADER_KEYS = ("label", "streams", "mode")
_SOURCE_PREFIX = "source."


def format_value(value: Optional[float]) -> str:
    """Exact text form of a metric; ``None`` and NaN become ``N/A``."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return UNAVAILABLE
    number = float(value)
    if number.is_integer() and abs(number) < 1e15:
        return str(int(number))
    return repr(number)


def dumps(record: MetricsRecord) -> str:
    lines = [
        f"label={record.label}",
        f"streams={record.streams}",
        f"mode={record.workload}",
    ]
    lines.extend(f"{key}={format_value(value)}" for key, value in record.metrics.items())
    lines.extend(f"{_SOURCE_PREFIX}{key}={origin}" for key, origin in record.sources.items())
    return "\n".join(lines) + "\n"


def loads(text: str) -> MetricsRecord:
    header: Dict[str, str] = {}
    metrics: Dict[str, Optional[float]] = {}
    sources: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if key in _HEADER_KEYS:
            header[key] = value
        elif key.startswith(_SOURCE_PREFIX):
            sources[key[len(_SOURCE_PREFIX):]] = value
        elif key not in metrics:
            metrics[key] = parse_number(value)

    streams = parse_number(header.get("streams"))
    return MetricsRecord(
        label=header.get("label", ""),
        streams=int(streams) if streams is not None else 0,
        workload=header.get("mode", ""),
        metrics=metrics,
        sources=sources,
    )


def write_metrics(record: MetricsRecord, trial_dir: Path) -> Path:
    trial_dir.mkdir(parents=True, exist_ok=True)
    path = trial_dir / METRICS_FILE
    path.write_text(dumps(record), encoding="utf-8")
    logger.info("Metrics written to %s", path)
    return path


def read_metrics(path: Path) -> MetricsRecord:
    """Load a ``metrics.txt``; a directory argument means ``<dir>/metrics.txt``."""
    if path.is_dir():
        path = path / METRICS_FILE
    return loads(path.read_text(encoding="utf-8"))


def seconds_display(milliseconds: Optional[float]) -> str:
    if milliseconds is None:
        return UNAVAILABLE
    return f"{milliseconds / 1000:.1f}s"


def render_summary(
    record: MetricsRecord,
    *,
    title: str,
    lines: Iterable[str],
    disk_usage: str = "",
    ftl_stats: str = "",
) -> str:
    body = [
        f"=== {title}: {record.label} (STREAMS={record.streams}) ===",
        f"Date: {current_timestamp()}",
        *lines,
        "",
        "--- Disk Usage ---",
        disk_usage.rstrip() or "(unavailable)",
        "",
        "--- FTL Stats ---",
        ftl_stats.rstrip() or "(unavailable)",
    ]
    degraded = sorted(key for key, origin in record.sources.items() if origin != "measured")
    if degraded:
        body.extend(["", "--- Metric Sources ---"])
        body.extend(f"  {key:<24} {record.sources[key]}" for key in degraded)
    return "\n".join(body) + "\n"


def write_summary(text: str, trial_dir: Path) -> Path:
    trial_dir.mkdir(parents=True, exist_ok=True)
    path = trial_dir / SUMMARY_FILE
    path.write_text(text, encoding="utf-8")
    return path


def read_summary(trial_dir: Path) -> str:
    try:
        return (trial_dir / SUMMARY_FILE).read_text(encoding="utf-8")
    except OSError:
        return "(no summary)"
