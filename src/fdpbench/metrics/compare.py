"""Baseline vs treatment comparison: per-metric deltas and the rendered report."""

from __future__ import annotations

import io
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from fdpbench.metrics.store import UNAVAILABLE, format_value, seconds_display
from fdpbench.trial.models import MetricsRecord
from fdpbench.utils import current_timestamp, secs_to_duration

logger = logging.getLogger(__name__)

HIGHER = "higher"
LOWER = "lower"


def _plain(value: Optional[float]) -> str:
    if value is None:
        return UNAVAILABLE
    if float(value).is_integer():
        return format_value(value)
    return f"{value:.4g}" if abs(value) < 1 else f"{value:,.2f}"


def _duration(value: Optional[float]) -> str:
    return UNAVAILABLE if value is None else secs_to_duration(value)


@dataclass(frozen=True)
class MetricSpec:
    key: str
    label: str
    better: Optional[str] = None  # HIGHER, LOWER, or None for informational rows
    display: Callable[[Optional[float]], str] = _plain

    @property
    def has_delta(self) -> bool:
        return self.better is not None


METRIC_SPECS: Dict[str, Sequence[MetricSpec]] = {
    "replay": (
        MetricSpec("total_blocks", "Blocks Imported"),
        MetricSpec("import_duration_s", "Duration", LOWER, _duration),
        MetricSpec("blocks_per_sec", "Blocks/sec", HIGHER),
        MetricSpec("mgas_per_sec", "Mgas/sec", HIGHER),
        MetricSpec("waf", "WAF", LOWER),
        MetricSpec("stall_count", "Write Stalls", LOWER),
        MetricSpec("stall_time_ms", "Stall Time", LOWER, seconds_display),
        MetricSpec("compaction_time_ms", "Compaction Time", LOWER, seconds_display),
    ),
    "network": (
        MetricSpec("confirmed_tps", "Confirmed TPS (tx/s)", HIGHER),
        MetricSpec("throughput_txb", "Throughput (tx/block)", HIGHER),
        MetricSpec("waf", "WAF", LOWER),
        MetricSpec("bps", "Blocks/sec", HIGHER),
        MetricSpec("stall_count", "Write Stalls", LOWER),
        MetricSpec("stall_time_ms", "Write Stall Time", LOWER, seconds_display),
        MetricSpec("compaction_time_ms", "Compaction Time", LOWER, seconds_display),
        MetricSpec("level0_compactions", "L0 Compactions", LOWER),
        MetricSpec("non_level0_compactions", "Non-L0 Compactions", LOWER),
    ),
    "sui": (
        MetricSpec("total_txs", "Total TXs"),
        MetricSpec("duration_s", "Duration", LOWER, _duration),
        MetricSpec("avg_tps", "Avg TPS", HIGHER),
        MetricSpec("committed_tps", "Committed TPS", HIGHER),
        MetricSpec("waf", "WAF", LOWER),
        MetricSpec("min_round_s", "Min Round (s)", LOWER),
        MetricSpec("max_round_s", "Max Round (s)", LOWER),
    ),
}

TITLES = {
    "replay": "Mainnet Replay",
    "network": "Node Network",
    "sui": "Sui Benchmark",
}


def percent_delta(baseline: Optional[float], treatment: Optional[float]) -> Optional[float]:
    """``(t - b) / |b| * 100``; ``None`` when either side is missing, NaN, or ``b`` is zero."""
    if baseline is None or treatment is None:
        return None
    if math.isnan(baseline) or math.isnan(treatment):
        return None
    if abs(baseline) < 1e-9:
        return None
    return (treatment - baseline) / abs(baseline) * 100.0


def format_delta(delta: Optional[float]) -> str:
    return UNAVAILABLE if delta is None else f"{delta:+.1f}%"


@dataclass(frozen=True)
class ComparisonRow:
    spec: MetricSpec
    baseline: Optional[float]
    treatment: Optional[float]
    delta: Optional[float]

    @property
    def verdict(self) -> str:
        if self.delta is None or not self.spec.has_delta or self.delta == 0:
            return ""
        improved = (self.delta > 0) == (self.spec.better == HIGHER)
        return "better" if improved else "worse"


@dataclass(frozen=True)
class ComparisonReport:
    baseline: MetricsRecord
    treatment: MetricsRecord
    rows: List[ComparisonRow] = field(default_factory=list)

    @property
    def workload(self) -> str:
        return self.baseline.workload or self.treatment.workload

    def row(self, key: str) -> ComparisonRow:
        for row in self.rows:
            if row.spec.key == key:
                return row
        raise KeyError(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload,
            "generated_at": current_timestamp(),
            "baseline": self.baseline.as_dict(),
            "treatment": self.treatment.as_dict(),
            "metrics": {
                row.spec.key: {
                    "label": row.spec.label,
                    "better": row.spec.better,
                    "baseline": row.baseline,
                    "treatment": row.treatment,
                    "delta_percent": row.delta,
                }
                for row in self.rows
            },
        }


def specs_for(workload: str, baseline: MetricsRecord, treatment: MetricsRecord) -> Sequence[MetricSpec]:
    specs = METRIC_SPECS.get(workload)
    if specs is not None:
        return specs
    keys = list(dict.fromkeys([*baseline.metrics, *treatment.metrics]))
    return [MetricSpec(key, key, LOWER if key == "waf" else None) for key in keys]


def compare(baseline: MetricsRecord, treatment: MetricsRecord) -> ComparisonReport:
    if baseline.workload and treatment.workload and baseline.workload != treatment.workload:
        logger.warning("Comparing different workloads: %s vs %s", baseline.workload, treatment.workload)
    workload = baseline.workload or treatment.workload
    rows = []
    for spec in specs_for(workload, baseline, treatment):
        b = baseline.get(spec.key)
        t = treatment.get(spec.key)
        delta = percent_delta(b, t) if spec.has_delta else None
        rows.append(ComparisonRow(spec=spec, baseline=b, treatment=t, delta=delta))
    return ComparisonReport(baseline=baseline, treatment=treatment, rows=rows)


def build_table(report: ComparisonReport) -> Table:
    base, treat = report.baseline, report.treatment
    title = TITLES.get(report.workload, report.workload.title())
    table = Table(
        title=f"{title}: {base.label} ({base.streams} stream) vs {treat.label} ({treat.streams} streams)",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Metric", no_wrap=True)
    table.add_column(base.label, justify="right")
    table.add_column(treat.label, justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Better", justify="center")
    table.add_column("", justify="left")

    for row in report.rows:
        spec = row.spec
        table.add_row(
            spec.label,
            spec.display(row.baseline),
            spec.display(row.treatment),
            format_delta(row.delta) if spec.has_delta else "",
            spec.better or "",
            row.verdict,
        )
    return table


def render(report: ComparisonReport, *, width: int = 100) -> str:
    """Plain-text rendering of the comparison table plus a legend."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=width, color_system=None, force_terminal=False)
    console.print(build_table(report))
    higher = [row.spec.label for row in report.rows if row.spec.better == HIGHER]
    lower = [row.spec.label for row in report.rows if row.spec.better == LOWER]
    if higher:
        console.print(f"  For {', '.join(higher)}: positive delta = {report.treatment.label} is better", soft_wrap=True)
    if lower:
        console.print(f"  For {', '.join(lower)}: negative delta = {report.treatment.label} is better", soft_wrap=True)
    return buffer.getvalue()


def write_comparison(
    report: ComparisonReport,
    results_dir: Path,
    *,
    baseline_summary: str = "",
    treatment_summary: str = "",
) -> Path:
    """Write ``comparison.txt`` (table + both summaries) and ``comparison.json``."""
    results_dir.mkdir(parents=True, exist_ok=True)
    title = TITLES.get(report.workload, report.workload.title())
    text = "\n".join(
        [
            f"=== FDP {title}: Comparison Report ===",
            f"Date: {current_timestamp()}",
            "",
            render(report),
            f"──────────────── {report.baseline.label} Details ────────────────",
            baseline_summary.rstrip() or "(no summary)",
            "",
            f"──────────────── {report.treatment.label} Details ────────────────",
            treatment_summary.rstrip() or "(no summary)",
            "",
        ]
    )
    text_path = results_dir / "comparison.txt"
    text_path.write_text(text, encoding="utf-8")

    json_path = results_dir / "comparison.json"
    with json_path.open("w", encoding="utf-8") as handle:
        json.dump(report.to_dict(), handle, indent=2, sort_keys=True)
    logger.info("Comparison report saved to %s", text_path)
    return text_path
