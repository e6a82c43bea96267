"""Top-N queries over a trailing window of the retention buffer."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from powerwatch.collector import ProcessUsage

if TYPE_CHECKING:
    from powerwatch.ringbuffer import RetentionBuffer

DEFAULT_LIMIT = 10

# Unit suffix -> seconds, as accepted by Go-style durations ("1h30m", "250ms")
_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class InvalidDuration(ValueError):
    """Duration string is malformed or not positive."""


def parse_duration(text: str) -> timedelta:
    """Parse a time span like '30s', '5m', '2h', '1h30m' or '1.5h'.

    Raises:
        InvalidDuration: If text is empty, malformed, zero or negative
    """
    value = text.strip()
    if not value:
        raise InvalidDuration("duration is empty")
    if value.startswith("-"):
        raise InvalidDuration(f"duration must be positive: {text!r}")
    value = value.removeprefix("+")

    seconds = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if not match:
            raise InvalidDuration(f"invalid duration: {text!r}")
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()

    if seconds <= 0:
        raise InvalidDuration(f"duration must be positive: {text!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError as e:
        raise InvalidDuration(f"duration too large: {text!r}") from e


def window_start(now: datetime, window: timedelta) -> datetime:
    """Return the start of a trailing window, clamped to the earliest datetime.

    A window longer than the calendar reaches back covers the whole buffer.
    """
    try:
        return now - window
    except OverflowError:
        return datetime.min


def rank(samples: list[ProcessUsage], limit: int = DEFAULT_LIMIT) -> list[ProcessUsage]:
    """Order samples by CPU usage, highest first, keeping at most `limit`.

    sorted() is stable, so equal CPU values keep their collection order.
    """
    return sorted(samples, key=lambda s: s.cpu_usage, reverse=True)[:limit]


def top_processes(
    buffer: "RetentionBuffer",
    window: timedelta,
    *,
    now: datetime | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[ProcessUsage]:
    """Return the heaviest CPU consumers recorded within the trailing window.

    The snapshot is taken under the buffer lock; sorting happens after
    the lock is released.
    """
    now = now or datetime.now()
    return rank(buffer.snapshot(window_start(now, window)), limit)


@dataclass
class TopReport:
    """Ranked result of one top query."""

    window_seconds: float
    generated_at: datetime
    sample_count: int  # Samples in the window before truncation
    rows: list[ProcessUsage] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "window_seconds": self.window_seconds,
            "generated_at": self.generated_at.isoformat(),
            "sample_count": self.sample_count,
            "rows": [r.to_dict() for r in self.rows],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TopReport":
        """Deserialize from a dictionary."""
        return cls(
            window_seconds=data["window_seconds"],
            generated_at=datetime.fromisoformat(data["generated_at"]),
            sample_count=data["sample_count"],
            rows=[ProcessUsage.from_dict(r) for r in data["rows"]],
        )


def build_report(
    buffer: "RetentionBuffer",
    window: timedelta,
    *,
    now: datetime | None = None,
    limit: int = DEFAULT_LIMIT,
) -> TopReport:
    """Run a top query and wrap the result with its window metadata."""
    now = now or datetime.now()
    in_window = buffer.snapshot(window_start(now, window))
    return TopReport(
        window_seconds=window.total_seconds(),
        generated_at=now,
        sample_count=len(in_window),
        rows=rank(in_window, limit),
    )
