"""Per-process usage sources: subprocess acquisition and line parsing."""

import asyncio
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import psutil
import structlog

if TYPE_CHECKING:
    from powerwatch.config import Config

log = structlog.get_logger()

_NUMBER = re.compile(r"[-+]?\d*\.\d+|\d+")
_MEMORY = re.compile(r"(\d+(?:\.\d+)?)\s*([BKMG])?", re.IGNORECASE)

POWERMETRICS_PREFIX = "Process: "


@dataclass(frozen=True)
class ProcessUsage:
    """One process's resource reading at one instant.

    Name is not unique: the same process seen in two cycles yields two
    independent samples. gpu_usage and idle_wake are 0.0 for sources that
    don't report them.
    """

    name: str
    cpu_usage: float
    mem_usage: float
    timestamp: datetime
    gpu_usage: float = 0.0
    idle_wake: float = 0.0

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "name": self.name,
            "cpu_usage": self.cpu_usage,
            "idle_wake": self.idle_wake,
            "gpu_usage": self.gpu_usage,
            "mem_usage": self.mem_usage,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessUsage":
        """Deserialize from a dictionary."""
        return cls(
            name=data["name"],
            cpu_usage=data["cpu_usage"],
            idle_wake=data.get("idle_wake", 0.0),
            gpu_usage=data.get("gpu_usage", 0.0),
            mem_usage=data["mem_usage"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


LineParser = Callable[[str, datetime], ProcessUsage | None]


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def parse_float(text: str) -> float:
    """Extract the first number in text, or 0.0 if there is none."""
    match = _NUMBER.search(text)
    if not match:
        return 0.0
    try:
        return float(match.group())
    except ValueError:
        return 0.0


def parse_memory_mb(value: str) -> float:
    """Parse memory string like '339M', '1024K', '2G', '0B' to megabytes."""
    value = value.strip().rstrip("+-")  # Remove +/- indicators
    match = _MEMORY.match(value)
    if not match:
        return 0.0

    num = float(match.group(1))
    suffix = (match.group(2) or "B").upper()

    multipliers = {"B": 1 / 1024**2, "K": 1 / 1024, "M": 1.0, "G": 1024.0}
    return num * multipliers[suffix]


def parse_powermetrics_line(line: str, timestamp: datetime) -> ProcessUsage | None:
    """Parse one `Process: name, cpu, idle wake, gpu, mem` line.

    Returns None for anything that isn't a process line. Numeric fields that
    don't parse become 0.0 rather than dropping the line.
    """
    if not line.startswith(POWERMETRICS_PREFIX):
        return None

    parts = line.split(",")
    if len(parts) < 5:
        return None

    return ProcessUsage(
        name=parts[0][len(POWERMETRICS_PREFIX) :].strip(),
        cpu_usage=parse_float(parts[1]),
        idle_wake=parse_float(parts[2]),
        gpu_usage=parse_float(parts[3]),
        mem_usage=parse_float(parts[4]),
        timestamp=timestamp,
    )


def parse_top_line(line: str, timestamp: datetime) -> ProcessUsage | None:
    """Parse one `top -stats cpu,mem,command` data row.

    Header and summary lines are rejected by requiring a finite numeric CPU
    column.
    The command is last so names containing spaces survive the split.
    """
    parts = line.split(None, 2)
    if len(parts) < 3:
        return None

    try:
        cpu = float(parts[0])
    except ValueError:
        return None
    if not math.isfinite(cpu):
        return None

    return ProcessUsage(
        name=parts[2].strip(),
        cpu_usage=cpu,
        mem_usage=parse_memory_mb(parts[1]),
        timestamp=timestamp,
    )


def parse_output(
    text: str,
    parser: LineParser,
    timestamp: datetime | None = None,
) -> list[ProcessUsage]:
    """Parse every line of a batch, skipping lines that aren't samples.

    All samples in a batch share one collector-assigned timestamp.
    """
    timestamp = timestamp or datetime.now()
    samples = []
    for line in text.splitlines():
        try:
            sample = parser(line, timestamp)
        except (ValueError, IndexError):
            continue
        if sample is not None:
            samples.append(sample)
    return samples


# ─────────────────────────────────────────────────────────────────────────────
# Sources
# ─────────────────────────────────────────────────────────────────────────────


class SourceError(RuntimeError):
    """A collection cycle could not acquire data."""


class MetricsSource:
    """Acquires one batch of samples per collection cycle."""

    name = "base"

    async def collect(self) -> list[ProcessUsage]:
        """Return the samples for one cycle.

        Raises:
            SourceError: If acquisition fails for this cycle
        """
        raise NotImplementedError


class CommandSource(MetricsSource):
    """Source that runs a command per cycle and parses its full output."""

    cmd: list[str] = []

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def parse(self, output: str, timestamp: datetime) -> list[ProcessUsage]:
        """Turn the command's stdout into samples."""
        raise NotImplementedError

    async def _run(self) -> str:
        """Run the command once and drain all of stdout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise SourceError(f"{self.cmd[0]} not found: {e}") from e
        except PermissionError as e:
            raise SourceError(
                f"{self.cmd[0]} failed to start: {e}. It may require root privileges (sudo)."
            ) from e
        except OSError as e:
            raise SourceError(f"{self.cmd[0]} failed to start: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # Already exited
            await proc.wait()
            raise SourceError(f"{self.cmd[0]} timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            stderr_msg = stderr.decode("utf-8", errors="replace").strip()
            raise SourceError(f"{self.cmd[0]} exited with {proc.returncode}: {stderr_msg}")

        return stdout.decode("utf-8", errors="replace")

    async def collect(self) -> list[ProcessUsage]:
        """Run the command and parse everything it printed."""
        output = await self._run()
        if not output.strip():
            raise SourceError(f"{self.cmd[0]} produced no output")
        return self.parse(output, datetime.now())


class PowermetricsSource(CommandSource):
    """Per-process energy metrics (CPU, idle wakeups, GPU, memory) via powermetrics.

    Runs one sample per cycle (`-n 1`) so each cycle sees a complete batch.
    powermetrics itself spends the `-i 1000` interval measuring, so one cycle
    takes about a second before the daemon sleeps; with the default
    sample_interval a new batch lands roughly every two seconds.
    """

    name = "powermetrics"
    cmd = [
        "/usr/bin/powermetrics",
        "--samplers",
        "cpu_power,gpu_power,tasks",
        "--show-process-energy",
        "--show-process-gpu",
        "-i",
        "1000",
        "-n",
        "1",
    ]

    def parse(self, output: str, timestamp: datetime) -> list[ProcessUsage]:
        return parse_output(output, parse_powermetrics_line, timestamp)


class TopSource(CommandSource):
    """CPU and memory per process via top.

    top needs two samples to report CPU deltas; only the last block is used.
    """

    name = "top"
    cmd = ["/usr/bin/top", "-l", "2", "-stats", "cpu,mem,command"]

    def parse(self, output: str, timestamp: datetime) -> list[ProcessUsage]:
        blocks = re.split(r"^Processes:.*$", output, flags=re.MULTILINE)
        return parse_output(blocks[-1], parse_top_line, timestamp)


class PsutilSource(MetricsSource):
    """Portable source reading the process table with psutil.

    psutil caches Process objects between process_iter() calls, so CPU
    percentages are measured since the previous cycle.
    """

    name = "psutil"

    def _collect_sync(self) -> list[ProcessUsage]:
        timestamp = datetime.now()
        samples = []
        for proc in psutil.process_iter(["name", "cpu_percent", "memory_info"]):
            try:
                info = proc.info
                samples.append(
                    ProcessUsage(
                        name=info["name"] or "unknown",
                        cpu_usage=info["cpu_percent"] or 0.0,
                        mem_usage=(info["memory_info"].rss if info["memory_info"] else 0)
                        / 1024
                        / 1024,
                        timestamp=timestamp,
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return samples

    async def collect(self) -> list[ProcessUsage]:
        """Read the process table off the event loop thread."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._collect_sync)
        except psutil.Error as e:
            raise SourceError(f"psutil failed: {e}") from e


_SOURCES: dict[str, type[MetricsSource]] = {
    "powermetrics": PowermetricsSource,
    "top": TopSource,
    "psutil": PsutilSource,
}


def create_source(config: "Config") -> MetricsSource:
    """Build the source named by config.system.source."""
    name = config.system.source
    if name not in _SOURCES:
        raise ValueError(f"Unknown source: {name!r}. Valid sources: {list(_SOURCES)}")
    return _SOURCES[name]()
