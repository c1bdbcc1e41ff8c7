from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

from .channel import Connector, stdio_connector, subprocess_connector, websocket_connector
from .config import BridgeConfig, BridgeSettings
from .config_store import ConfigStore
from .config_sync import ConfigSynchronizer
from .correlator import RequestCorrelator
from .errors import BridgeError
from .front_door import FrontDoor
from .supervisor import ConnectionSupervisor

_LOGGER = logging.getLogger("tab_bridge.host")


class HostStartupError(BridgeError):
    """The HTTP listener could not be bound at startup."""


def connector_for(settings: BridgeSettings) -> tuple[Connector, bool]:
    """Pick the peer binding; the bool says whether reconnecting makes sense."""
    if settings.peer_url:
        return websocket_connector(settings.peer_url), True
    if settings.peer_command:
        return subprocess_connector(settings.peer_command), True
    return stdio_connector(), False


class BridgeHost:
    def __init__(
        self,
        settings: BridgeSettings,
        *,
        connector: Connector | None = None,
        reconnect: bool | None = None,
        store: ConfigStore | None = None,
    ) -> None:
        self.settings = settings
        if connector is None:
            connector, default_reconnect = connector_for(settings)
        else:
            default_reconnect = True
        self.supervisor = ConnectionSupervisor(
            connector,
            reconnect_delay=settings.reconnect_delay,
            reconnect=default_reconnect if reconnect is None else reconnect,
        )
        self.correlator = RequestCorrelator()
        self.store = store or ConfigStore.in_dir(settings.config_dir)
        self.config_sync = ConfigSynchronizer(
            self.supervisor,
            self.correlator,
            self.store,
            timeout=settings.config_timeout,
        )
        self.front_door = FrontDoor(
            self.supervisor,
            self.correlator,
            lambda: self.config_sync.config,
            host=settings.host,
            shutdown_timeout=settings.shutdown_timeout,
        )
        self.config_sync.set_port_change_hook(self.front_door.restart)
        self.supervisor.on_connection_lost(self.correlator.fail_all)

        self._tasks: list[asyncio.Task] = []
        self._stop = asyncio.Event()
        self.ready = asyncio.Event()

    @property
    def config(self) -> BridgeConfig:
        return self.config_sync.config

    def request_stop(self) -> None:
        self._stop.set()

    async def start(self) -> BridgeConfig:
        self.supervisor.start()
        self._tasks = [
            asyncio.create_task(self.correlator.run(self.supervisor.responses), name="tab-bridge-correlator"),
            asyncio.create_task(self.config_sync.run(self.supervisor.requests), name="tab-bridge-config-sync"),
        ]
        config = await self.config_sync.initialize(connect_timeout=self.settings.connect_wait)
        try:
            await self.front_door.start(config.port)
        except OSError as exc:
            raise HostStartupError(f"Cannot listen on {self.settings.host}:{config.port}: {exc}") from exc
        await self.config_sync.migrate()
        self.ready.set()
        return config

    async def shutdown(self) -> None:
        # Stop taking HTTP requests first, then drop the channel (fails anything still pending).
        await self.front_door.stop()
        await self.supervisor.stop()
        for t in self._tasks:
            t.cancel()
        for t in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._tasks = []

    async def run(self) -> None:
        try:
            await self.start()
            stop_wait = asyncio.create_task(self._stop.wait())
            closed_wait = asyncio.create_task(self.supervisor.closed.wait())
            try:
                await asyncio.wait({stop_wait, closed_wait}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop_wait.cancel()
                closed_wait.cancel()
            if self.supervisor.closed.is_set() and not self._stop.is_set():
                _LOGGER.info("peer channel closed; shutting down")
        finally:
            await self.shutdown()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)


async def run_host(settings: BridgeSettings, **kwargs: Any) -> None:
    host = BridgeHost(settings, **kwargs)
    host.install_signal_handlers()
    await host.run()


__all__ = ["BridgeHost", "HostStartupError", "connector_for", "run_host"]
