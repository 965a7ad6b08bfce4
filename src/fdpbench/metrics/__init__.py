"""Metric extraction, persistence and baseline/treatment comparison."""

from fdpbench.metrics.compare import ComparisonReport, compare, render, write_comparison
from fdpbench.metrics.extractor import MetricsExtractor, TrialSources
from fdpbench.metrics.store import read_metrics, write_metrics

__all__ = [
    "ComparisonReport",
    "compare",
    "render",
    "write_comparison",
    "MetricsExtractor",
    "TrialSources",
    "read_metrics",
    "write_metrics",
]
