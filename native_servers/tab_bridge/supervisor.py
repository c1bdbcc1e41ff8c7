from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Callable
from typing import Any

from .channel import Connector, DuplexChannel
from .envelope import RESPONSE_TYPES, BridgeRequest, Envelope, parse_envelope
from .errors import ConnectionLost, FramingError, NotConnected
from .framing import FrameDecoder, encode_message

_LOGGER = logging.getLogger("tab_bridge.supervisor")

DEFAULT_RECONNECT_DELAY = 1.0


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionSupervisor:
    """Owns the single live duplex channel to the peer.

    - One read loop per channel; decoded envelopes are published on typed queues:
      ``responses`` (consumed by the correlator) and ``requests`` (peer-originated
      config messages, consumed by the config synchronizer).
    - Writes are serialized so partial frames never interleave on the wire.
    - On EOF/error: DISCONNECTED, loss listeners fire, then a fixed-delay reconnect.
      There is no retry limit unless ``reconnect=False``.
    """

    def __init__(
        self,
        connector: Connector,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        reconnect: bool = True,
    ) -> None:
        self._connector = connector
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.reconnect = bool(reconnect)

        self.responses: asyncio.Queue[Envelope] = asyncio.Queue()
        self.requests: asyncio.Queue[Envelope] = asyncio.Queue()

        self._state = ConnectionState.DISCONNECTED
        self._channel: DuplexChannel | None = None
        self._write_lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._drop = asyncio.Event()
        self.closed = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._listeners: list[Callable[[ConnectionLost], Any]] = []

        self.connects = 0
        self.framing_errors = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def on_connection_lost(self, cb: Callable[[ConnectionLost], Any]) -> None:
        self._listeners.append(cb)

    async def wait_connected(self, timeout: float) -> bool:
        if self.is_connected():
            return True
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return self.is_connected()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.closed.clear()
        self._task = asyncio.create_task(self._run(), name="tab-bridge-supervisor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._teardown(ConnectionLost("Bridge host shutting down"))
        self.closed.set()

    def disconnect(self) -> None:
        """Drop the current channel; the supervisor reconnects after the usual delay."""
        self._drop.set()

    async def send(self, envelope: Any) -> None:
        msg = envelope.to_wire() if hasattr(envelope, "to_wire") else envelope
        frame = encode_message(msg)
        async with self._write_lock:
            channel = self._channel
            if channel is None or self._state is not ConnectionState.CONNECTED:
                raise NotConnected("Peer is not connected")
            try:
                await channel.write(frame)
            except ConnectionLost:
                self.disconnect()
                raise
            except (OSError, RuntimeError) as exc:
                self.disconnect()
                raise ConnectionLost(f"write to peer failed: {exc}") from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            while True:
                self._state = ConnectionState.CONNECTING
                try:
                    channel = await self._connector()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    self._state = ConnectionState.DISCONNECTED
                    _LOGGER.warning("connect to peer failed: %s", exc)
                    if not self.reconnect:
                        return
                    await asyncio.sleep(self.reconnect_delay)
                    continue

                self._channel = channel
                self._state = ConnectionState.CONNECTED
                self._drop.clear()
                self._connected.set()
                self.connects += 1
                _LOGGER.info("connected to peer via %s", channel.name)

                reason = await self._serve(channel)
                await self._teardown(ConnectionLost(f"Peer connection lost: {reason}"))
                if not self.reconnect:
                    return
                _LOGGER.info("reconnecting in %.1fs", self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
        finally:
            self.closed.set()

    async def _serve(self, channel: DuplexChannel) -> str:
        reader = asyncio.create_task(self._read_loop(channel), name="tab-bridge-read-loop")
        dropper = asyncio.create_task(self._drop.wait())
        try:
            done, _ = await asyncio.wait({reader, dropper}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                return reader.result()
            return "disconnect requested"
        finally:
            for t in (reader, dropper):
                t.cancel()
            for t in (reader, dropper):
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await t

    async def _read_loop(self, channel: DuplexChannel) -> str:
        decoder = FrameDecoder()
        while True:
            try:
                data = await channel.read()
            except (OSError, ConnectionLost) as exc:
                return f"read error: {exc}"
            if not data:
                return "EOF"
            try:
                messages = decoder.messages(data)
            except FramingError as exc:
                # An oversized length prefix leaves no way to resynchronize.
                self.framing_errors += 1
                _LOGGER.error("unrecoverable framing error: %s", exc)
                return str(exc)
            for msg in messages:
                if isinstance(msg, FramingError):
                    self.framing_errors += 1
                    _LOGGER.warning("dropping malformed frame: %s", msg)
                    continue
                self._dispatch(msg)

    def _dispatch(self, msg: dict[str, Any]) -> None:
        try:
            envelope = parse_envelope(msg)
        except FramingError as exc:
            self.framing_errors += 1
            _LOGGER.warning("dropping unrecognised message: %s", exc)
            return
        if isinstance(envelope, RESPONSE_TYPES):
            self.responses.put_nowait(envelope)
        elif isinstance(envelope, BridgeRequest):
            _LOGGER.warning("peer sent a bridging request (id=%s); dropping", envelope.request_id)
        else:
            self.requests.put_nowait(envelope)

    async def _teardown(self, exc: ConnectionLost) -> None:
        channel = self._channel
        self._channel = None
        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._connected.clear()
        if channel is not None:
            await channel.close()
        if was_connected:
            _LOGGER.warning("%s", exc)
            for cb in list(self._listeners):
                try:
                    cb(exc)
                except Exception:
                    _LOGGER.exception("connection-lost listener failed")
