"""Formatting utilities for the top report."""

import click

from powerwatch.config import ReportConfig
from powerwatch.query import TopReport

NAME_WIDTH = 30


def cpu_color(cpu: float, report: ReportConfig) -> str:
    """Return the click color for a CPU value."""
    if cpu > report.high_cpu:
        return "red"
    if cpu > report.moderate_cpu:
        return "yellow"
    return "green"


def format_window(seconds: float) -> str:
    """Format a window length compactly: '45s', '5m', '1h30m'."""
    total = int(round(seconds))
    if total < 60:
        return f"{seconds:g}s" if seconds < 1 else f"{total}s"

    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return "".join(parts)


def truncate(name: str, width: int = NAME_WIDTH) -> str:
    """Shorten a process name to fit its column."""
    return name if len(name) <= width else name[: width - 2] + ".."


def format_report(report: TopReport, config: ReportConfig, *, color: bool = True) -> list[str]:
    """Render a top report as table lines.

    Returns only a header line and a message when the window is empty.
    """
    title = f"Top processes by power usage (last {format_window(report.window_seconds)})"
    lines = [click.style(title, bold=True) if color else title]

    if not report.rows:
        lines.append("No samples recorded in this window.")
        return lines

    header = f"{'Process':<{NAME_WIDTH}} {'CPU':<10} {'Idle Wake':<10} {'GPU':<10} {'Memory':<10}"
    lines.append(click.style(header, bold=True) if color else header)

    for row in report.rows:
        cpu = f"{row.cpu_usage:<10.2f}"
        if color:
            cpu = click.style(cpu, fg=cpu_color(row.cpu_usage, config))
        lines.append(
            f"{truncate(row.name):<{NAME_WIDTH}} {cpu} "
            f"{row.idle_wake:<10.2f} {row.gpu_usage:<10.2f} {row.mem_usage:<10.2f}"
        )

    lines.append(f"{len(report.rows)} of {report.sample_count} samples in window")
    return lines
