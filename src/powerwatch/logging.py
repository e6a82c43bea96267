"""Daemon output: Rich status lines for humans, structlog JSON Lines for machines.

The console helpers below are what an operator watching `powerwatch run`
sees. Every module also logs structured events through
`structlog.get_logger()`; once `configure()` has run those events go to a
rotating JSON Lines file tagged with the daemon's PID and metrics source.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from powerwatch.config import Config

_console = Console(highlight=False)


class Icon:
    """Markers shown between the level tag and the message."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    SIGNAL = "⚡"
    RESET = "♻"


# level -> (tag, rich style)
_LEVELS = {
    "info": ("info", "bright_blue"),
    "warn": ("warn", "yellow"),
    "error": ("err", "bold red"),
}


def emit(level: str, msg: str, icon: str = "") -> None:
    """Print one timestamped status line; msg may contain Rich markup."""
    tag, style = _LEVELS.get(level, (level, "default"))
    parts = [f"[dim]{datetime.now():%H:%M:%S}[/]", f"[{style}]\\[{tag}][/]"]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    emit("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    emit("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    emit("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Daemon lifecycle lines
# ─────────────────────────────────────────────────────────────────────────────


def version_info(name: str, version: str) -> None:
    info(f"[bold cyan]{name}[/] v{version}")


def config_summary(source: str, max_records: int, interval: float) -> None:
    info(
        f"Sampling [cyan]{source}[/] every [cyan]{interval}s[/], "
        f"keeping the last [cyan]{max_records}[/] samples"
    )


def socket_listening(path: str) -> None:
    info(f"Answering queries on [cyan]{path}[/]")


def daemon_started() -> None:
    info("Collector running", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Got [bold]{name}[/], finishing current cycle", Icon.SIGNAL)


def daemon_stopping() -> None:
    info("Shutting down...", Icon.WAIT)


def daemon_stopped() -> None:
    info("Collector stopped", Icon.OK)


def already_running(pid: int | None = None) -> None:
    suffix = f" [dim](PID {pid})[/]" if pid else ""
    error(f"A powerwatch daemon is already running{suffix}", Icon.FAIL)


def heartbeat(
    cycles: int,
    samples: int,
    failed: int,
    buffer_size: int,
    buffer_capacity: int,
    client_count: int,
    rss_mb: float,
) -> None:
    """Summarize the cycles since the previous heartbeat."""
    failed_part = f", [yellow]{failed} failed[/]" if failed else ""
    info(
        f"[cyan]{samples}[/] samples in {cycles} cycles{failed_part}, "
        f"[dim]{buffer_size}/{buffer_capacity} buffer, {client_count} clients, "
        f"{rss_mb:.1f}MB RSS[/]",
        Icon.HEARTBEAT,
    )


def sample_failed(error_msg: str) -> None:
    error(f"Cycle skipped: {error_msg}", Icon.FAIL)


def config_created(path: str) -> None:
    info(f"Wrote default config to [cyan]{path}[/]")


def config_reset(path: str, reason: str) -> None:
    warn(f"Config at [cyan]{path}[/] replaced with defaults [dim]({reason})[/]", Icon.RESET)


# ─────────────────────────────────────────────────────────────────────────────
# Structured event log
# ─────────────────────────────────────────────────────────────────────────────


def _event_chain() -> list[structlog.types.Processor]:
    """Processors shared by structlog events and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
        structlog.processors.format_exc_info,
    ]


def configure(config: Config, level: int = logging.INFO) -> None:
    """Send structured events to the rotating JSON Lines log at config.log_path.

    Timestamps are local, matching sample timestamps. Every record carries
    the daemon's pid and the configured metrics source.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_event_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    structlog.contextvars.bind_contextvars(pid=os.getpid(), metrics=config.system.source)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_event_chain(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
