"""Background daemon for powerwatch."""

import asyncio
import os
import resource
import signal
import sys
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from powerwatch import logging as console
from powerwatch.collector import MetricsSource, SourceError, create_source
from powerwatch.config import Config
from powerwatch.ringbuffer import RetentionBuffer
from powerwatch.socket_server import SocketServer

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    source: str | None = None
    started_at: datetime | None = None
    cycle_count: int = 0
    sample_count: int = 0
    failed_cycles: int = 0
    last_sample_time: datetime | None = None

    def update_cycle(self, samples: int) -> None:
        """Update state after a successful cycle."""
        self.cycle_count += 1
        self.sample_count += samples
        self.last_sample_time = datetime.now()

    def record_failure(self) -> None:
        """Update state after a failed cycle."""
        self.cycle_count += 1
        self.failed_cycles += 1


class Daemon:
    """Owns the retention buffer and drives the collection loop.

    The single RetentionBuffer instance is shared by reference with the
    socket server; nothing else holds sample state.
    """

    def __init__(self, config: Config, source: MetricsSource | None = None):
        self.config = config
        self.state = DaemonState()

        self.source = source or create_source(config)
        self.state.source = self.source.name

        self.buffer = RetentionBuffer(max_records=config.retention.max_records)

        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None
        self._owns_pid_file = False

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        from importlib.metadata import PackageNotFoundError, version

        try:
            pkg_version = version("powerwatch")
        except PackageNotFoundError:
            pkg_version = "unknown"
        log.info("daemon_starting", version=pkg_version)
        console.version_info("powerwatch", pkg_version)

        log.info(
            "daemon_config",
            source=self.source.name,
            max_records=self.buffer.capacity,
            sample_interval=self.config.system.sample_interval,
        )
        console.config_summary(
            self.source.name, self.buffer.capacity, self.config.system.sample_interval
        )

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        if self._check_already_running():
            log.error("daemon_already_running")
            console.already_running()
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        self._socket_server = SocketServer(
            socket_path=self.config.socket_path,
            buffer=self.buffer,
            state=self.state,
        )
        await self._socket_server.start()
        console.socket_listening(str(self.config.socket_path))

        self.state.running = True
        self.state.started_at = datetime.now()
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False

        log.info("daemon_stopped")
        console.daemon_stopped()

    def request_shutdown(self) -> None:
        """Ask the main loop to exit after the current cycle."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self.request_shutdown()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually a powerwatch daemon. This prevents false positives after a
        reboot when a different process may have the same PID.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return True

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "powerwatch" in cmdline_str:
                log.info("daemon_already_running_verified", pid=pid)
                return True

            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return False

        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True

    async def _collect_once(self) -> int:
        """Run one collection cycle and return the number of samples stored.

        The buffer lock is only taken for the append itself, never while the
        source command runs or its output is parsed.

        Raises:
            SourceError: If the source could not produce data this cycle
        """
        samples = await self.source.collect()
        self.buffer.extend(samples)
        self.state.update_cycle(len(samples))
        return len(samples)

    async def _main_loop(self) -> None:
        """Collect a batch, then sleep a fixed interval, until shutdown.

        Each iteration:
        1. Run the source command and parse its full output
        2. Append every parsed sample to the retention buffer
        3. Log a heartbeat every heartbeat_samples cycles
        4. Sleep sample_interval seconds (no drift correction)

        Failed cycles are logged and skipped; only shutdown ends the loop.
        An in-flight cycle always finishes before the loop exits.
        """
        sample_interval = self.config.system.sample_interval
        heartbeat_interval = self.config.system.heartbeat_samples
        heartbeat_count = 0
        heartbeat_samples = 0
        heartbeat_failed = 0

        while not self._shutdown_event.is_set():
            try:
                stored = await self._collect_once()
                heartbeat_samples += stored
            except SourceError as e:
                self.state.record_failure()
                heartbeat_failed += 1
                log.error("sample_failed", error=str(e))
                console.sample_failed(str(e))
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except Exception as e:
                self.state.record_failure()
                heartbeat_failed += 1
                log.exception("sample_failed", error=str(e))
                console.sample_failed(str(e))

            heartbeat_count += 1
            if heartbeat_count >= heartbeat_interval:
                self._log_heartbeat(heartbeat_count, heartbeat_samples, heartbeat_failed)
                heartbeat_count = 0
                heartbeat_samples = 0
                heartbeat_failed = 0

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=sample_interval)
                break  # Shutdown requested during sleep
            except asyncio.TimeoutError:
                pass  # Normal timeout, continue to next sample

    def _log_heartbeat(self, cycles: int, samples: int, failed: int) -> None:
        client_count = self._socket_server.client_count if self._socket_server else 0
        buffer_size = len(self.buffer)

        # ru_maxrss is bytes on macOS, kilobytes on Linux
        rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        rss_mb = rss / 1024 / 1024 if sys.platform == "darwin" else rss / 1024

        log.info(
            "daemon_heartbeat",
            cycles=cycles,
            samples=samples,
            failed=failed,
            buffer=f"{buffer_size}/{self.buffer.capacity}",
            clients=client_count,
            rss_mb=round(rss_mb, 1),
        )
        console.heartbeat(
            cycles=cycles,
            samples=samples,
            failed=failed,
            buffer_size=buffer_size,
            buffer_capacity=self.buffer.capacity,
            client_count=client_count,
            rss_mb=rss_mb,
        )


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads (and repairs) the config file if not provided
    """
    if config is None:
        config = Config.load_or_reset()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
