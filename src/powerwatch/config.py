"""Configuration system for powerwatch."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import structlog
import tomlkit

from powerwatch import logging as console

log = structlog.get_logger()

VALID_SOURCES = ("powermetrics", "top", "psutil")


class ConfigError(ValueError):
    """Config file exists but cannot be used."""


@dataclass
class RetentionConfig:
    """Retention buffer configuration."""

    max_records: int = 10000  # Samples kept in memory before the oldest is evicted


@dataclass
class SystemConfig:
    """Collector and daemon configuration."""

    source: str = "powermetrics"  # powermetrics, top or psutil
    sample_interval: float = 1.0  # Seconds slept between collection cycles
    heartbeat_samples: int = 60  # Log heartbeat every N cycles
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class ReportConfig:
    """Top report configuration.

    CPU thresholds pick the colour of the CPU column:
    - above high_cpu: red
    - above moderate_cpu: yellow
    - otherwise: green
    """

    limit: int = 10
    high_cpu: float = 50.0
    moderate_cpu: float = 20.0


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _section(data: dict, name: str) -> dict:
    """Return a top-level TOML table, or an empty dict if absent."""
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table, got {section!r}")
    return section


def _get(data: dict, key: str, default, kind: type | tuple[type, ...]):
    """Read a key from a TOML table, checking its type against the default's."""
    value = data.get(key, default)
    # bool is an int subclass; never accept it for numeric settings
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"Invalid value for {key!r}: {value!r}")
    return value


@dataclass
class Config:
    """Main configuration container."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    report: ReportConfig = field(default_factory=ReportConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "powerwatch"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "powerwatch"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID, socket).

        Stored in /tmp/ so it's cleared on reboot, avoiding stale file issues.
        """
        return Path("/tmp/powerwatch")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("retention", "system", "report"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.

        Raises:
            ConfigError: If the file cannot be parsed or holds invalid values
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e
        except (tomlkit.exceptions.TOMLKitError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            retention=_load_retention_config(_section(data, "retention")),
            system=_load_system_config(_section(data, "system")),
            report=_load_report_config(_section(data, "report")),
        )

    @classmethod
    def load_or_reset(cls, path: Path | None = None) -> "Config":
        """Load config, rewriting the file with defaults if missing or unusable.

        A broken config never blocks startup: the reason is logged and the
        defaults are persisted so the next run starts clean.
        """
        defaults = cls()
        path = path or defaults.config_path

        if not path.exists():
            log.info("config_created", path=str(path), reason="missing")
            console.config_created(str(path))
            _save_defaults(defaults, path)
            return defaults

        try:
            return cls.load(path)
        except ConfigError as e:
            log.warning("config_reset", path=str(path), error=str(e))
            console.config_reset(str(path), str(e))
            _save_defaults(defaults, path)
            return defaults


def _save_defaults(config: Config, path: Path) -> None:
    """Persist defaults; failure to write is logged, not fatal."""
    try:
        config.save(path)
    except OSError as e:
        log.warning("config_save_failed", path=str(path), error=str(e))


def _load_retention_config(data: dict) -> RetentionConfig:
    """Load retention config from TOML data."""
    d = RetentionConfig()
    return RetentionConfig(
        max_records=_get(data, "max_records", d.max_records, int),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, validating the source name."""
    d = SystemConfig()

    source = data.get("source", d.source)
    if source not in VALID_SOURCES:
        raise ConfigError(f"Invalid source: {source!r}. Must be one of {VALID_SOURCES}")

    sample_interval = _get(data, "sample_interval", d.sample_interval, (int, float))
    if sample_interval <= 0:
        raise ConfigError(f"sample_interval must be > 0, got {sample_interval}")

    heartbeat_samples = _get(data, "heartbeat_samples", d.heartbeat_samples, int)
    if heartbeat_samples < 1:
        raise ConfigError(f"heartbeat_samples must be >= 1, got {heartbeat_samples}")

    return SystemConfig(
        source=str(source),
        sample_interval=float(sample_interval),
        heartbeat_samples=heartbeat_samples,
        log_max_bytes=_get(data, "log_max_bytes", d.log_max_bytes, int),
        log_backup_count=_get(data, "log_backup_count", d.log_backup_count, int),
    )


def _load_report_config(data: dict) -> ReportConfig:
    """Load report config from TOML data."""
    d = ReportConfig()

    limit = _get(data, "limit", d.limit, int)
    if limit < 1:
        raise ConfigError(f"limit must be >= 1, got {limit}")

    return ReportConfig(
        limit=limit,
        high_cpu=float(_get(data, "high_cpu", d.high_cpu, (int, float))),
        moderate_cpu=float(_get(data, "moderate_cpu", d.moderate_cpu, (int, float))),
    )
