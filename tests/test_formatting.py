"""Tests for top report formatting."""

import click
import pytest

from powerwatch.config import ReportConfig
from powerwatch.formatting import NAME_WIDTH, cpu_color, format_report, format_window, truncate
from powerwatch.query import TopReport
from tests.conftest import BASE_TIME, make_usage


@pytest.mark.parametrize(
    "cpu,expected",
    [
        (90.0, "red"),
        (50.1, "red"),
        (50.0, "yellow"),
        (25.0, "yellow"),
        (20.0, "green"),
        (0.0, "green"),
    ],
)
def test_cpu_color_thresholds(cpu, expected):
    """CPU above 50 is red, above 20 yellow, otherwise green."""
    assert cpu_color(cpu, ReportConfig()) == expected


def test_cpu_color_custom_thresholds():
    """Thresholds come from the report config."""
    config = ReportConfig(high_cpu=10.0, moderate_cpu=5.0)
    assert cpu_color(12.0, config) == "red"
    assert cpu_color(7.0, config) == "yellow"


@pytest.mark.parametrize(
    "seconds,expected",
    [(0.5, "0.5s"), (45, "45s"), (300, "5m"), (3600, "1h"), (5400, "1h30m"), (3661, "1h1m1s")],
)
def test_format_window(seconds, expected):
    """Windows render in the same units they are typed in."""
    assert format_window(seconds) == expected


def test_truncate_short_name_unchanged():
    """Names that fit are left alone."""
    assert truncate("Safari") == "Safari"


def test_truncate_long_name():
    """Long names are cut to the column width with a marker."""
    name = "com.apple.WebKit.WebContent.Helper.Extended"
    result = truncate(name)
    assert len(result) == NAME_WIDTH
    assert result.endswith("..")


def _report(rows, sample_count=None):
    return TopReport(
        window_seconds=300.0,
        generated_at=BASE_TIME,
        sample_count=len(rows) if sample_count is None else sample_count,
        rows=rows,
    )


def test_format_report_plain():
    """Uncoloured output has a title, header, one line per row and a footer."""
    report = _report(
        [
            make_usage(name="WindowServer", cpu=45.2, mem=256.0, gpu=12.0, idle_wake=120.5),
            make_usage(name="Safari", cpu=12.5, mem=512.0),
        ],
        sample_count=40,
    )

    lines = format_report(report, ReportConfig(), color=False)

    assert lines[0] == "Top processes by power usage (last 5m)"
    assert lines[1].split() == ["Process", "CPU", "Idle", "Wake", "GPU", "Memory"]
    assert lines[2].split() == ["WindowServer", "45.20", "120.50", "12.00", "256.00"]
    assert lines[3].startswith("Safari")
    assert lines[-1] == "2 of 40 samples in window"


def test_format_report_columns_align():
    """Every data row is the same width as the header."""
    report = _report([make_usage(name="a", cpu=1.0), make_usage(name="b" * 40, cpu=99.0)])

    lines = format_report(report, ReportConfig(), color=False)

    header, rows = lines[1], lines[2:-1]
    assert all(len(row) == len(header) for row in rows)


def test_format_report_empty_window():
    """An empty window prints a message instead of a table."""
    lines = format_report(_report([]), ReportConfig(), color=False)

    assert lines == [
        "Top processes by power usage (last 5m)",
        "No samples recorded in this window.",
    ]


def test_format_report_colors_cpu_column():
    """With colour on, the CPU value carries its threshold colour."""
    report = _report([make_usage(name="hog", cpu=75.0)])

    lines = format_report(report, ReportConfig(), color=True)

    assert click.style(f"{75.0:<10.2f}", fg="red") in lines[2]
    assert click.unstyle(lines[2]).split()[:2] == ["hog", "75.00"]
