from __future__ import annotations

import json
from pathlib import Path

import pytest

from fdpbench.metrics.compare import (
    compare,
    format_delta,
    percent_delta,
    render,
    write_comparison,
)
from fdpbench.trial.models import MetricsRecord


def _pair(**metrics):
    baseline = MetricsRecord(
        label="non-fdp",
        streams=1,
        workload="replay",
        metrics={key: values[0] for key, values in metrics.items()},
    )
    treatment = MetricsRecord(
        label="fdp",
        streams=8,
        workload="replay",
        metrics={key: values[1] for key, values in metrics.items()},
    )
    return baseline, treatment


def test_waf_reduction_is_reported_as_negative_delta() -> None:
    assert format_delta(percent_delta(4.74, 2.41)) == "-49.2%"


def test_positive_delta_has_explicit_sign() -> None:
    assert format_delta(percent_delta(100.0, 112.5)) == "+12.5%"


@pytest.mark.parametrize(
    "baseline, treatment",
    [(0.0, 5.0), (None, 5.0), (5.0, None), (float("nan"), 1.0), (1e-12, 3.0)],
)
def test_delta_unavailable_for_missing_or_zero_baseline(baseline, treatment) -> None:
    assert percent_delta(baseline, treatment) is None
    assert format_delta(percent_delta(baseline, treatment)) == "N/A"


def test_negative_baseline_uses_absolute_value() -> None:
    assert percent_delta(-10.0, -5.0) == pytest.approx(50.0)


def test_compare_marks_better_and_worse_by_direction() -> None:
    baseline, treatment = _pair(waf=(4.74, 2.41), blocks_per_sec=(800.0, 760.0), stall_count=(0.0, 3.0))
    report = compare(baseline, treatment)

    assert report.row("waf").verdict == "better"
    assert report.row("blocks_per_sec").verdict == "worse"
    assert report.row("stall_count").delta is None
    assert report.row("stall_count").verdict == ""
    assert report.row("total_blocks").baseline is None


def test_render_shows_labels_and_deltas() -> None:
    baseline, treatment = _pair(waf=(4.74, 2.41))
    text = render(compare(baseline, treatment))

    assert "non-fdp" in text
    assert "-49.2%" in text
    assert "negative delta = fdp is better" in text


def test_unknown_workload_compares_union_of_keys() -> None:
    baseline = MetricsRecord(label="a", streams=1, workload="custom", metrics={"x": 1.0, "waf": 2.0})
    treatment = MetricsRecord(label="b", streams=8, workload="custom", metrics={"y": 3.0, "waf": 1.0})
    report = compare(baseline, treatment)

    assert [row.spec.key for row in report.rows] == ["x", "waf", "y"]
    assert report.row("waf").delta == pytest.approx(-50.0)
    assert report.row("x").delta is None


def test_write_comparison_emits_text_and_json(tmp_path: Path) -> None:
    baseline, treatment = _pair(waf=(4.74, 2.41), blocks_per_sec=(800.0, 900.0))
    path = write_comparison(
        compare(baseline, treatment),
        tmp_path,
        baseline_summary="=== baseline ===",
        treatment_summary="",
    )

    text = path.read_text(encoding="utf-8")
    assert text.splitlines()[0] == "=== FDP Mainnet Replay: Comparison Report ==="
    assert "=== baseline ===" in text
    assert "(no summary)" in text
    payload = json.loads((tmp_path / "comparison.json").read_text(encoding="utf-8"))
    assert payload["workload"] == "replay"
    assert payload["metrics"]["waf"]["delta_percent"] == pytest.approx(-49.156, abs=1e-3)
    assert payload["metrics"]["blocks_per_sec"]["better"] == "higher"
