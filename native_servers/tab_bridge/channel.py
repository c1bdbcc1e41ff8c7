"""Duplex byte channels between the host and the privileged peer.

The supervisor only sees ``read()``/``write()``/``close()``; how the bytes move
(standard streams, a child process, a WebSocket) is up to the channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from .errors import ConnectionLost

_LOGGER = logging.getLogger("tab_bridge.channel")

_READ_CHUNK = 64 * 1024


class DuplexChannel(Protocol):
    name: str

    async def read(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[DuplexChannel]]


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The WebSocket peer binding requires the 'websockets' Python package. "
            "Install it (pip install websockets) or use the stdio/subprocess binding."
        ) from exc


class StreamChannel:
    def __init__(self, reader: asyncio.StreamReader, writer: Any, *, name: str = "stream") -> None:
        self.name = name
        self._reader = reader
        self._writer = writer

    async def read(self) -> bytes:
        return await self._reader.read(_READ_CHUNK)

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            self._writer.close()
        wait_closed = getattr(self._writer, "wait_closed", None)
        if wait_closed is not None:
            with contextlib.suppress(Exception):
                await wait_closed()


class SubprocessChannel(StreamChannel):
    """Peer running as a child process; frames flow over its stdin/stdout."""

    def __init__(self, proc: asyncio.subprocess.Process, *, name: str) -> None:
        if proc.stdout is None or proc.stdin is None:
            raise ValueError("peer process must be spawned with stdin and stdout pipes")
        super().__init__(proc.stdout, proc.stdin, name=name)
        self.proc = proc

    async def close(self) -> None:
        await super().close()
        if self.proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.proc.terminate()
            try:
                await asyncio.wait_for(self.proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self.proc.kill()
                await self.proc.wait()


class WebSocketChannel:
    """Binary WebSocket messages carrying raw frame bytes.

    Message boundaries are irrelevant: the frame decoder reassembles whatever
    arrives, exactly as it does for a byte stream.
    """

    def __init__(self, ws: Any, *, name: str) -> None:
        self.name = name
        self._ws = ws

    async def read(self) -> bytes:
        from websockets.exceptions import ConnectionClosed

        try:
            data = await self._ws.recv()
        except ConnectionClosed:
            return b""
        if isinstance(data, str):
            return data.encode("utf-8")
        return bytes(data)

    async def write(self, data: bytes) -> None:
        from websockets.exceptions import ConnectionClosed

        try:
            await self._ws.send(bytes(data))
        except ConnectionClosed as exc:
            raise ConnectionLost(f"websocket closed: {exc}") from exc

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self._ws.close()


def stdio_connector() -> Connector:
    """Bind to this process's own stdin/stdout (the browser launched us).

    Standard streams can only be attached once; a second connect attempt means
    the browser side is gone for good.
    """
    used = False

    async def _connect() -> DuplexChannel:
        nonlocal used
        if used:
            raise ConnectionLost("stdio channel already closed")
        used = True
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=2**24)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)
        transport, protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, os.fdopen(sys.stdout.fileno(), "wb", buffering=0, closefd=False)
        )
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return StreamChannel(reader, writer, name="stdio")

    return _connect


def subprocess_connector(argv: Sequence[str], *, env: dict[str, str] | None = None) -> Connector:
    if not argv:
        raise ValueError("peer command is empty")
    args = [str(a) for a in argv]

    async def _connect() -> DuplexChannel:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
        )
        _LOGGER.info("spawned peer pid=%s: %s", proc.pid, " ".join(args))
        return SubprocessChannel(proc, name=f"subprocess:{proc.pid}")

    return _connect


def websocket_connector(url: str, *, open_timeout: float = 5.0) -> Connector:
    async def _connect() -> DuplexChannel:
        websockets = _import_websockets()
        ws = await websockets.connect(url, open_timeout=open_timeout, max_size=None, ping_interval=None)
        return WebSocketChannel(ws, name=f"websocket:{url}")

    return _connect
