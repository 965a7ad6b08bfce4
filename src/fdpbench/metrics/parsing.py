"""Tolerant parsing of counters out of free-form log and metrics text."""

from __future__ import annotations

import math
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

_NUMBER = r"[0-9][0-9,]*(?:\.[0-9]+)?"
_FLOAT_RE = re.compile(r"[0-9]+\.[0-9]+")

STALL_LINE = "write stall stats"
STALL_KEYS = ("stall_count", "stall_time_ms", "compaction_time_ms")


def parse_number(raw: Optional[str]) -> Optional[float]:
    """``"1,234.5"`` → ``1234.5``; anything unparseable (or NaN) → ``None``."""
    if raw is None:
        return None
    text = raw.strip().replace(",", "")
    if not text or text.upper() in ("N/A", "NONE", "NAN"):
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    if math.isnan(value):
        return None
    return value


def read_lines(path: Path) -> List[str]:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line.replace("\0", "") for line in handle]
    except OSError:
        return []


def key_values(key: str, lines: Iterable[str]) -> List[float]:
    """Every numeric value of ``key=<number>`` across ``lines``, in order."""
    pattern = re.compile(rf"\b{re.escape(key)}=({_NUMBER})")
    values: List[float] = []
    for line in lines:
        for match in pattern.finditer(line):
            value = parse_number(match.group(1))
            if value is not None:
                values.append(value)
    return values


def last_value(key: str, lines: Iterable[str]) -> Optional[float]:
    values = key_values(key, lines)
    return values[-1] if values else None


def sum_values(key: str, lines: Iterable[str]) -> Optional[float]:
    values = key_values(key, lines)
    return sum(values) if values else None


def matching_lines(needle: str, lines: Iterable[str]) -> List[str]:
    lowered = needle.lower()
    return [line for line in lines if lowered in line.lower()]


def graceful_stall_stats(lines: Iterable[str], *, aggregate: str = "last") -> Optional[Dict[str, float]]:
    """Counters from the ``write stall stats`` line(s) a node logs when it closes its database.

    ``aggregate="sum"`` adds the counters of every line (one line per
    process run); ``"last"`` keeps only the latest. Returns ``None`` when no
    such line exists; individual keys missing from a present line are 0.
    """
    stall_lines = matching_lines(STALL_LINE, lines)
    if not stall_lines:
        return None
    pick = sum_values if aggregate == "sum" else last_value
    if aggregate == "last":
        stall_lines = stall_lines[-1:]
    return {key: pick(key, stall_lines) or 0.0 for key in STALL_KEYS}


def prometheus_value(text: str, metric_prefix: str) -> Optional[float]:
    """First value whose metric name starts with ``metric_prefix``.

    Accepts both ``name: value`` lines and the quoted expvar JSON the geth
    debug endpoint serves (``"name": value``).
    """
    pattern = re.compile(rf"{re.escape(metric_prefix)}[^/\s:\"]*\"?\s*[:\s]\s*({_NUMBER})")
    match = pattern.search(text)
    return parse_number(match.group(1)) if match else None


def last_float(text: str) -> Optional[float]:
    figures = _FLOAT_RE.findall(text)
    return float(figures[-1]) if figures else None
