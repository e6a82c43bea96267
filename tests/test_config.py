"""Tests for configuration system."""

from pathlib import Path
from unittest.mock import patch

import pytest

from powerwatch.config import (
    Config,
    ConfigError,
    ReportConfig,
    RetentionConfig,
    SystemConfig,
)


def test_retention_config_defaults():
    """RetentionConfig keeps 10000 samples by default."""
    assert RetentionConfig().max_records == 10000


def test_system_config_defaults():
    """SystemConfig has correct defaults."""
    config = SystemConfig()
    assert config.source == "powermetrics"
    assert config.sample_interval == 1.0
    assert config.heartbeat_samples == 60
    assert config.log_max_bytes == 5 * 1024 * 1024
    assert config.log_backup_count == 3


def test_report_config_defaults():
    """ReportConfig thresholds match the CPU colour bands."""
    config = ReportConfig()
    assert config.limit == 10
    assert config.high_cpu == 50.0
    assert config.moderate_cpu == 20.0


def test_config_paths():
    """Paths live under the user config/state dirs and /tmp."""
    config = Config()
    assert config.config_path == Path.home() / ".config" / "powerwatch" / "config.toml"
    assert config.log_path == Path.home() / ".local" / "state" / "powerwatch" / "daemon.log"
    assert config.pid_path == Path("/tmp/powerwatch/daemon.pid")
    assert config.socket_path == Path("/tmp/powerwatch/daemon.sock")


def test_config_save_and_load_roundtrip(tmp_path):
    """Saved values load back unchanged."""
    path = tmp_path / "config.toml"
    config = Config(
        retention=RetentionConfig(max_records=500),
        system=SystemConfig(source="top", sample_interval=2.5, heartbeat_samples=10),
        report=ReportConfig(limit=5, high_cpu=80.0, moderate_cpu=30.0),
    )

    config.save(path)
    loaded = Config.load(path)

    assert loaded == config


def test_config_save_creates_parent_dirs(tmp_path):
    """save() creates missing parent directories."""
    path = tmp_path / "nested" / "dir" / "config.toml"
    Config().save(path)
    assert path.exists()


def test_config_save_writes_sections(tmp_path):
    """The saved file has one TOML table per section."""
    path = tmp_path / "config.toml"
    Config().save(path)

    content = path.read_text()
    assert "[retention]" in content
    assert "[system]" in content
    assert "[report]" in content
    assert "max_records = 10000" in content


def test_config_load_missing_file_returns_defaults(tmp_path):
    """A missing file gives defaults without creating it."""
    path = tmp_path / "missing.toml"

    config = Config.load(path)

    assert config == Config()
    assert not path.exists()


def test_config_load_partial_file_fills_defaults(tmp_path):
    """Keys missing from the file fall back to defaults."""
    path = tmp_path / "config.toml"
    path.write_text("[retention]\nmax_records = 42\n")

    config = Config.load(path)

    assert config.retention.max_records == 42
    assert config.system == SystemConfig()
    assert config.report == ReportConfig()


def test_config_load_int_interval_becomes_float(tmp_path):
    """An integer sample_interval is accepted as seconds."""
    path = tmp_path / "config.toml"
    path.write_text("[system]\nsample_interval = 2\n")

    config = Config.load(path)

    assert config.system.sample_interval == 2.0
    assert isinstance(config.system.sample_interval, float)


@pytest.mark.parametrize(
    "content",
    [
        "this is = = not toml",
        "[retention]\nmax_records = 'many'\n",
        "[retention]\nmax_records = true\n",
        "[system]\nsource = 'dtrace'\n",
        "[system]\nsample_interval = 0\n",
        "[system]\nsample_interval = -1.0\n",
        "[system]\nheartbeat_samples = 0\n",
        "[report]\nlimit = 0\n",
        "[report]\nhigh_cpu = 'hot'\n",
        "retention = 5\n",
    ],
)
def test_config_load_invalid_raises(tmp_path, content):
    """Unparseable files and invalid values raise ConfigError."""
    path = tmp_path / "config.toml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        Config.load(path)


def test_config_load_non_utf8_raises(tmp_path):
    """Binary garbage is reported as ConfigError."""
    path = tmp_path / "config.toml"
    path.write_bytes(b"\xff\xfe\x00garbage")

    with pytest.raises(ConfigError):
        Config.load(path)


def test_config_load_zero_max_records_is_allowed(tmp_path):
    """max_records <= 0 loads; the buffer clamps it."""
    path = tmp_path / "config.toml"
    path.write_text("[retention]\nmax_records = 0\n")

    assert Config.load(path).retention.max_records == 0


def test_load_or_reset_creates_missing_file(tmp_path):
    """A missing file is created with defaults."""
    path = tmp_path / "config.toml"

    with patch("powerwatch.config.console") as mock_console:
        config = Config.load_or_reset(path)

    assert config == Config()
    assert path.exists()
    assert Config.load(path) == Config()
    mock_console.config_created.assert_called_once_with(str(path))


def test_load_or_reset_rewrites_corrupt_file(tmp_path):
    """A corrupt file is replaced with defaults and the reason reported."""
    path = tmp_path / "config.toml"
    path.write_text("[[[ broken")

    with patch("powerwatch.config.console") as mock_console:
        config = Config.load_or_reset(path)

    assert config == Config()
    assert Config.load(path) == Config()
    mock_console.config_reset.assert_called_once()
    assert mock_console.config_reset.call_args.args[0] == str(path)


def test_load_or_reset_rewrites_invalid_values(tmp_path):
    """A well-formed file with an invalid value is reset too."""
    path = tmp_path / "config.toml"
    path.write_text("[system]\nsource = 'nope'\n")

    with patch("powerwatch.config.console"):
        config = Config.load_or_reset(path)

    assert config.system.source == "powermetrics"
    assert "powermetrics" in path.read_text()


def test_load_or_reset_keeps_valid_file(tmp_path):
    """A valid file is loaded and left untouched."""
    path = tmp_path / "config.toml"
    path.write_text("[retention]\nmax_records = 7\n")

    with patch("powerwatch.config.console") as mock_console:
        config = Config.load_or_reset(path)

    assert config.retention.max_records == 7
    assert path.read_text() == "[retention]\nmax_records = 7\n"
    mock_console.config_reset.assert_not_called()
    mock_console.config_created.assert_not_called()


def test_load_or_reset_unwritable_path_still_returns_defaults(tmp_path):
    """Failure to persist defaults doesn't block startup."""
    path = tmp_path / "config.toml"

    with (
        patch("powerwatch.config.console"),
        patch.object(Config, "save", side_effect=OSError("read-only")),
    ):
        config = Config.load_or_reset(path)

    assert config == Config()


def test_config_load_directory_raises(tmp_path):
    """A directory where the config file should be is reported as ConfigError."""
    path = tmp_path / "config.toml"
    path.mkdir()

    with pytest.raises(ConfigError, match="Failed to read"):
        Config.load(path)


def test_config_load_permission_denied_raises(tmp_path):
    """A file that can't be opened is reported as ConfigError."""
    path = tmp_path / "config.toml"
    path.write_text("[retention]\nmax_records = 7\n")

    with patch("powerwatch.config.open", side_effect=PermissionError("denied"), create=True):
        with pytest.raises(ConfigError, match="denied"):
            Config.load(path)


def test_load_or_reset_unreadable_file_returns_defaults(tmp_path):
    """An unreadable config doesn't stop the daemon from starting."""
    path = tmp_path / "config.toml"
    path.mkdir()

    with patch("powerwatch.config.console") as mock_console:
        config = Config.load_or_reset(path)

    assert config == Config()
    mock_console.config_reset.assert_called_once()
    assert "Is a directory" in mock_console.config_reset.call_args.args[1]
