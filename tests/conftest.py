"""Shared test fixtures for powerwatch."""

import tempfile
from collections.abc import Iterator
from contextlib import ExitStack
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from powerwatch.collector import ProcessUsage
from powerwatch.config import Config

BASE_TIME = datetime(2026, 1, 23, 12, 0, 0)


def make_usage(
    name: str = "test_proc",
    cpu: float = 10.0,
    mem: float = 100.0,
    t: float = 0.0,
    gpu: float = 0.0,
    idle_wake: float = 0.0,
) -> ProcessUsage:
    """Create a ProcessUsage for testing.

    `t` is seconds after BASE_TIME.
    """
    return ProcessUsage(
        name=name,
        cpu_usage=cpu,
        mem_usage=mem,
        gpu_usage=gpu,
        idle_wake=idle_wake,
        timestamp=BASE_TIME + timedelta(seconds=t),
    )


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    macOS has a 104-character limit for Unix socket paths.
    pytest's tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="pw_") as tmpdir:
        yield Path(tmpdir)


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Apply all Config path property patches to the given ExitStack."""
    # fmt: off
    for name, value in (
        ("config_dir", base_path),
        ("config_path", base_path / "config.toml"),
        ("state_dir", base_path),
        ("runtime_dir", base_path),
        ("log_path", base_path / "daemon.log"),
        ("pid_path", base_path / "daemon.pid"),
        ("socket_path", base_path / "daemon.sock"),
    ):
        stack.enter_context(patch.object(
            Config, name,
            new_callable=lambda v=value: property(lambda self: v)
        ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch all Config path properties to live under a short temp dir.

    Yields the base path for tests that need to reference it directly.
    """
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path
