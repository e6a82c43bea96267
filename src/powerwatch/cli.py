"""CLI commands for powerwatch."""

import click

from powerwatch.query import InvalidDuration, parse_duration


class DurationType(click.ParamType):
    """Click parameter accepting time spans like 30s, 5m, 2h or 1h30m."""

    name = "duration"

    def convert(self, value, param, ctx):
        try:
            return parse_duration(value)
        except InvalidDuration as e:
            self.fail(f"{e}. Use a number with a unit, e.g. 30s, 5m, 2h, 1h30m.", param, ctx)


DURATION = DurationType()


def _load_config():
    """Load config for client commands, falling back to defaults if broken.

    Only the daemon rewrites a broken config file.
    """
    from powerwatch.config import Config, ConfigError

    try:
        return Config.load()
    except ConfigError as e:
        click.echo(f"Warning: {e}; using defaults", err=True)
        return Config()


def _query_daemon(config, msg: dict) -> dict:
    """Send one request to the running daemon, exiting 1 if it can't be reached."""
    import asyncio

    from powerwatch.socket_client import NoReply, query

    try:
        response = asyncio.run(query(config.socket_path, msg))
    except NoReply as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except (FileNotFoundError, ConnectionError):
        click.echo("Error: daemon is not running. Start it with 'powerwatch run'.", err=True)
        raise SystemExit(1)
    except (TimeoutError, asyncio.TimeoutError):
        click.echo("Error: daemon did not respond in time.", err=True)
        raise SystemExit(1)

    if response.get("type") == "error":
        click.echo(f"Error: {response.get('message')}", err=True)
        raise SystemExit(1)
    return response


@click.group()
@click.version_option(package_name="powerwatch")
def main() -> None:
    """Sample per-process power usage and report the heaviest consumers."""
    pass


@main.command()
def run() -> None:
    """Run the background collector (blocks until SIGTERM/SIGINT)."""
    import asyncio

    from powerwatch.daemon import run_daemon

    try:
        asyncio.run(run_daemon())
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
@click.argument("duration", type=DURATION)
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None, help="Rows to show")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def top(duration, limit: int | None, as_json: bool) -> None:
    """Show top processes by CPU over the last DURATION (e.g. 30s, 5m, 2h)."""
    import json

    from powerwatch.formatting import format_report
    from powerwatch.query import TopReport

    config = _load_config()
    limit = limit or config.report.limit

    response = _query_daemon(
        config,
        {"type": "top", "window_seconds": duration.total_seconds(), "limit": limit},
    )

    if as_json:
        click.echo(json.dumps(response["report"], indent=2))
        return

    report = TopReport.from_dict(response["report"])
    for line in format_report(report, config.report):
        click.echo(line)


@main.command()
def status() -> None:
    """Quick health check."""
    import asyncio
    from datetime import datetime

    from powerwatch.socket_client import query

    config = _load_config()

    try:
        response = asyncio.run(query(config.socket_path, {"type": "status"}))
    except (FileNotFoundError, ConnectionError, TimeoutError, asyncio.TimeoutError):
        click.echo("Daemon: stopped")
        return

    click.echo(f"Daemon: running (PID {response['pid']})")
    click.echo(f"Source: {response['source']}")
    if response["started_at"]:
        started = datetime.fromisoformat(response["started_at"])
        click.echo(f"Started: {started.strftime('%Y-%m-%d %H:%M:%S')}")
    click.echo(f"Buffer: {response['buffer_size']}/{response['capacity']} samples")
    click.echo(f"Collected: {response['sample_count']} samples")
    if response.get("failed_cycles"):
        click.echo(f"Failed cycles: {response['failed_cycles']}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[retention]")
    click.echo(f"  max_records = {cfg.retention.max_records}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  source = {cfg.system.source}")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  heartbeat_samples = {cfg.system.heartbeat_samples}")
    click.echo(f"  log_max_bytes = {cfg.system.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.system.log_backup_count}")
    click.echo()
    click.echo("[report]")
    click.echo(f"  limit = {cfg.report.limit}")
    click.echo(f"  high_cpu = {cfg.report.high_cpu}")
    click.echo(f"  moderate_cpu = {cfg.report.moderate_cpu}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from powerwatch.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
