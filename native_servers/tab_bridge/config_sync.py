"""Config synchronization between the host and the peer.

The peer (extension options page) and the host both hold ``{version, port, apiToken}``.
On startup the host asks the peer for its copy, falling back to the durable store,
then pushes the effective config back as a migration step. Peer-originated
``setConfig`` calls are validated, persisted, and may move the HTTP listener.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import BridgeConfig
from .config_store import ConfigStore
from .correlator import CONFIG_CALL_TIMEOUT, CallKind, RequestCorrelator
from .envelope import ConfigGet, ConfigReply, ConfigSet, LegacyConfig
from .errors import (
    BridgeError,
    ConfigRejected,
    ConnectionLost,
    PersistError,
    RequestTimeout,
    ValidationError,
)
from .supervisor import ConnectionSupervisor

_LOGGER = logging.getLogger("tab_bridge.config_sync")

PortChangeHook = Callable[[int], Awaitable[None]]


class ConfigSynchronizer:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        correlator: RequestCorrelator,
        store: ConfigStore,
        *,
        on_port_change: PortChangeHook | None = None,
        timeout: float = CONFIG_CALL_TIMEOUT,
    ) -> None:
        self._supervisor = supervisor
        self._correlator = correlator
        self._store = store
        self._on_port_change = on_port_change
        self.timeout = float(timeout)
        self._config = BridgeConfig()
        self._lock = asyncio.Lock()
        self.source = "defaults"

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def set_port_change_hook(self, hook: PortChangeHook | None) -> None:
        self._on_port_change = hook

    # ─────────────────────────────────────────────────────────────────────────
    # Peer-facing operations
    # ─────────────────────────────────────────────────────────────────────────

    async def _call(self, envelope: ConfigGet | ConfigSet) -> dict[str, Any]:
        fut = self._correlator.register(envelope.request_id, CallKind.CONFIG, timeout=self.timeout)
        try:
            await self._supervisor.send(envelope)
        except BaseException:
            self._correlator.discard(envelope.request_id)
            raise
        reply: ConfigReply = await fut
        if not reply.success:
            raise ConfigRejected(reply.error or "peer rejected config call")
        return dict(reply.config or {})

    async def get_remote(self) -> dict[str, Any]:
        return await self._call(ConfigGet(request_id=self._correlator.next_id()))

    async def set_remote(self, partial: dict[str, Any]) -> dict[str, Any]:
        return await self._call(ConfigSet(request_id=self._correlator.next_id(), config=dict(partial)))

    # ─────────────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────────────

    async def initialize(self, *, connect_timeout: float = 1.0) -> BridgeConfig:
        """Establish the effective config: peer copy first, durable store second."""
        defaults = BridgeConfig()
        remote: dict[str, Any] | None = None
        if await self._supervisor.wait_connected(connect_timeout):
            try:
                remote = await self.get_remote()
            except (ConnectionLost, RequestTimeout, ConfigRejected) as exc:
                _LOGGER.warning("getConfig failed (%s); falling back to %s", exc, self._store.path)
        else:
            _LOGGER.info("peer not connected; loading config from %s", self._store.path)

        on_disk = self._store.load()
        if remote is not None:
            config = defaults.merged(on_disk, strict=False).merged(remote, strict=False)
            self.source = "peer"
        else:
            config = defaults.merged(on_disk, strict=False)
            self.source = "store" if on_disk else "defaults"

        if on_disk != config.to_wire():
            try:
                self._store.save(config)
            except PersistError as exc:
                _LOGGER.warning("could not persist startup config: %s", exc)

        async with self._lock:
            self._config = config
        _LOGGER.info("effective config from %s: port=%s auth=%s", self.source, config.port, config.auth_enabled)
        return config

    async def migrate(self) -> str:
        """Push the in-memory config to the peer.

        Returns ``"typed"`` when the peer acknowledged ``setConfig``, ``"legacy"``
        when it fell back to the untyped fire-and-forget message, ``"skipped"``
        when no peer is connected.
        """
        if not self._supervisor.is_connected():
            _LOGGER.info("config migration skipped: peer not connected")
            return "skipped"
        payload = self._config.to_wire()
        try:
            await self.set_remote(payload)
            return "typed"
        except (RequestTimeout, ConfigRejected) as exc:
            _LOGGER.info("peer did not accept setConfig (%s); sending legacy config message", exc)
        except ConnectionLost as exc:
            _LOGGER.warning("config migration aborted: %s", exc)
            return "skipped"
        try:
            await self._supervisor.send(LegacyConfig(config=payload))
        except ConnectionLost as exc:
            _LOGGER.warning("legacy config push failed: %s", exc)
            return "skipped"
        return "legacy"

    # ─────────────────────────────────────────────────────────────────────────
    # Accept path
    # ─────────────────────────────────────────────────────────────────────────

    async def apply(self, partial: dict[str, Any]) -> BridgeConfig:
        """Validate, persist, then publish a config change.

        Nothing changes unless the new config was written to disk. A port change
        restarts the HTTP listener after persistence; if the rebind fails the old
        port is restored both in memory and on disk.
        """
        if not isinstance(partial, dict):
            raise ValidationError("config must be an object")
        async with self._lock:
            current = self._config
            updated = current.merged(partial)
            if updated == current:
                return current
            self._store.save(updated)
            self._config = updated
            if updated.port != current.port and self._on_port_change is not None:
                _LOGGER.info("port changed from %s to %s, restarting HTTP listener", current.port, updated.port)
                try:
                    await self._on_port_change(updated.port)
                except OSError as exc:
                    rollback = BridgeConfig(version=updated.version, port=current.port, api_token=updated.api_token)
                    self._config = rollback
                    try:
                        self._store.save(rollback)
                    except PersistError:
                        _LOGGER.exception("failed to persist port rollback")
                    raise ValidationError(f"Cannot listen on port {updated.port}: {exc}") from exc
            else:
                _LOGGER.info("config updated (no port change)")
            return self._config

    async def _reply(self, request_id: int, *, error: str | None = None) -> None:
        reply = ConfigReply(
            request_id=request_id,
            success=error is None,
            config=self._config.to_wire(),
            error=error,
        )
        try:
            await self._supervisor.send(reply)
        except ConnectionLost as exc:
            _LOGGER.warning("could not answer config request %s: %s", request_id, exc)

    async def handle(self, envelope: Any) -> None:
        if isinstance(envelope, ConfigGet):
            await self._reply(envelope.request_id)
            return
        if isinstance(envelope, ConfigSet):
            try:
                await self.apply(envelope.config)
            except BridgeError as exc:
                _LOGGER.warning("rejected setConfig %s: %s", envelope.request_id, exc)
                await self._reply(envelope.request_id, error=str(exc))
                return
            except Exception as exc:
                _LOGGER.exception("setConfig %s failed", envelope.request_id)
                await self._reply(envelope.request_id, error=str(exc) or exc.__class__.__name__)
                return
            await self._reply(envelope.request_id)
            return
        if isinstance(envelope, LegacyConfig):
            try:
                await self.apply(envelope.config)
            except BridgeError as exc:
                _LOGGER.warning("ignored legacy config update: %s", exc)
            return
        _LOGGER.warning("unexpected inbound message: %r", envelope)

    async def run(self, inbox: asyncio.Queue) -> None:
        """Own the inbound config queue published by the connection supervisor."""
        while True:
            envelope = await inbox.get()
            try:
                await self.handle(envelope)
            except Exception:
                _LOGGER.exception("config request handling failed")
            finally:
                inbox.task_done()

