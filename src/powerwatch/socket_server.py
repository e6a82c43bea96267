"""Unix socket server answering top queries against the live retention buffer.

Protocol: newline-delimited JSON, one response per request.

Requests:
- {"type": "top", "window_seconds": 300, "limit": 10}
- {"type": "status"}

Responses:
- {"type": "top", "report": {...}}
- {"type": "status", "buffer_size": ..., "capacity": ..., ...}
- {"type": "error", "message": "..."}
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import stat
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from powerwatch.query import DEFAULT_LIMIT, build_report

if TYPE_CHECKING:
    from powerwatch.daemon import DaemonState
    from powerwatch.ringbuffer import RetentionBuffer

log = structlog.get_logger()


class SocketServer:
    """Unix domain socket server for on-demand queries.

    The buffer lock is only held while a snapshot is copied; ranking and
    socket writes happen outside it, so a slow client never stalls the
    collector.
    """

    def __init__(
        self,
        socket_path: Path,
        buffer: RetentionBuffer,
        state: DaemonState | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.buffer = buffer
        self.state = state
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Make socket accessible to non-root users (daemon may run as root for powermetrics)
        os.chmod(self.socket_path, stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO)

        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    def handle_request(self, request: Any) -> dict[str, Any]:
        """Build the response for one decoded request."""
        if not isinstance(request, dict):
            return _error("request must be a JSON object")

        msg_type = request.get("type")
        if msg_type == "top":
            return self._handle_top(request)
        if msg_type == "status":
            return self._handle_status()
        return _error(f"unknown request type: {msg_type!r}")

    def _handle_top(self, request: dict) -> dict[str, Any]:
        window_seconds = request.get("window_seconds")
        limit = request.get("limit", DEFAULT_LIMIT)

        if (
            isinstance(window_seconds, bool)
            or not isinstance(window_seconds, (int, float))
            or math.isnan(window_seconds)
            or window_seconds <= 0
        ):
            return _error(f"window_seconds must be a positive number, got {window_seconds!r}")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            return _error(f"limit must be a positive integer, got {limit!r}")

        try:
            window = timedelta(seconds=window_seconds)
        except OverflowError:
            window = timedelta.max

        try:
            report = build_report(self.buffer, window, limit=limit)
        except Exception as e:
            log.exception("top_query_failed", window_seconds=window_seconds, error=str(e))
            return _error(f"top query failed: {e}")
        return {"type": "top", "report": report.to_dict()}

    def _handle_status(self) -> dict[str, Any]:
        state = self.state
        started_at = state.started_at if state else None
        return {
            "type": "status",
            "buffer_size": len(self.buffer),
            "capacity": self.buffer.capacity,
            "sample_count": state.sample_count if state else 0,
            "failed_cycles": state.failed_cycles if state else 0,
            "started_at": started_at.isoformat() if started_at else None,
            "source": state.source if state else None,
            "pid": os.getpid(),
        }

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one client until it disconnects."""
        self._clients.add(writer)
        log.debug("socket_client_connected", count=len(self._clients))

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break

                try:
                    request = json.loads(line.decode())
                except (json.JSONDecodeError, UnicodeDecodeError):
                    log.warning("invalid_client_message")
                    response = _error("invalid JSON")
                else:
                    response = self.handle_request(request)

                writer.write(json.dumps(response).encode() + b"\n")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.debug("socket_client_disconnected", count=len(self._clients))


def _error(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}
