"""One-shot requests to the daemon over its Unix socket."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any


class NoReply(ConnectionError):
    """The daemon accepted the request but closed without answering."""


async def query(socket_path: Path, msg: dict[str, Any], timeout: float = 5.0) -> dict[str, Any]:
    """Send one JSON request line and return the daemon's JSON reply.

    Raises:
        FileNotFoundError: If the socket doesn't exist (daemon not running)
        ConnectionRefusedError: If the socket is stale and nothing listens on it
        NoReply: If the daemon hung up before replying
        asyncio.TimeoutError: If no reply arrives within timeout
    """
    if not socket_path.exists():
        raise FileNotFoundError(f"Socket not found: {socket_path}")

    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    try:
        writer.write(json.dumps(msg).encode() + b"\n")
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    if not line:
        raise NoReply(f"daemon at {socket_path} closed the connection without replying")
    return json.loads(line.decode())
