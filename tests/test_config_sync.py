from __future__ import annotations

import asyncio
import json
import struct
from pathlib import Path
from typing import Any, Callable

import pytest


class _PeerChannel:
    """Memory channel whose far end answers each host frame through ``responder``."""

    def __init__(self, responder: Callable[[dict[str, Any]], list[dict[str, Any]]]) -> None:
        from native_servers.tab_bridge.framing import FrameDecoder

        self.name = "fake-peer"
        self.responder = responder
        self.to_host: asyncio.Queue[bytes] = asyncio.Queue()
        self.seen: list[dict[str, Any]] = []
        self._decoder = FrameDecoder()

    async def read(self) -> bytes:
        return await self.to_host.get()

    async def write(self, data: bytes) -> None:
        for msg in self._decoder.messages(data):
            assert isinstance(msg, dict)
            self.seen.append(msg)
            for reply in self.responder(msg):
                self.peer_send(reply)

    async def close(self) -> None:
        self.to_host.put_nowait(b"")

    def peer_send(self, msg: dict[str, Any]) -> None:
        raw = json.dumps(msg).encode("utf-8")
        self.to_host.put_nowait(struct.pack("<I", len(raw)) + raw)


def _silent(msg: dict[str, Any]) -> list[dict[str, Any]]:
    return []


async def _harness(tmp_path: Path, responder=_silent, *, timeout: float = 1.0):  # noqa: ANN001, ANN202
    from native_servers.tab_bridge.config_store import ConfigStore
    from native_servers.tab_bridge.config_sync import ConfigSynchronizer
    from native_servers.tab_bridge.correlator import RequestCorrelator
    from native_servers.tab_bridge.supervisor import ConnectionSupervisor

    channel = _PeerChannel(responder)

    async def _connect() -> _PeerChannel:
        return channel

    sup = ConnectionSupervisor(_connect, reconnect_delay=0.01)
    corr = RequestCorrelator()
    store = ConfigStore(tmp_path / "config.json")
    sync = ConfigSynchronizer(sup, corr, store, timeout=timeout)
    sup.on_connection_lost(corr.fail_all)
    sup.start()
    tasks = [asyncio.create_task(corr.run(sup.responses)), asyncio.create_task(sync.run(sup.requests))]
    assert await sup.wait_connected(1.0)
    return sup, sync, store, channel, tasks


async def _close(sup, tasks) -> None:  # noqa: ANN001
    await sup.stop()
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _until(pred, timeout: float = 2.0) -> None:  # noqa: ANN001
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_startup_falls_back_to_store_when_peer_unreachable(tmp_path: Path) -> None:
    from native_servers.tab_bridge.config_store import ConfigStore
    from native_servers.tab_bridge.config_sync import ConfigSynchronizer
    from native_servers.tab_bridge.correlator import RequestCorrelator
    from native_servers.tab_bridge.supervisor import ConnectionSupervisor

    async def _main() -> None:
        async def _unreachable():  # noqa: ANN202
            raise OSError("no peer")

        sup = ConnectionSupervisor(_unreachable, reconnect_delay=0.01)
        store = ConfigStore(tmp_path / "config.json")
        store.path.write_text(json.dumps({"port": 9123}), encoding="utf-8")
        sync = ConfigSynchronizer(sup, RequestCorrelator(), store, timeout=0.1)
        sup.start()
        cfg = await sync.initialize(connect_timeout=0.05)
        assert cfg.port == 9123
        assert cfg.api_token == ""
        assert sync.source == "store"
        assert await sync.migrate() == "skipped"
        # The file is completed with the missing fields.
        assert json.loads(store.path.read_text(encoding="utf-8")) == {"version": 1, "port": 9123, "apiToken": ""}
        await sup.stop()

    asyncio.run(_main())


def test_startup_defaults_when_nothing_is_known(tmp_path: Path) -> None:
    from native_servers.tab_bridge.config import BridgeConfig

    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path, timeout=0.05)
        cfg = await sync.initialize(connect_timeout=0.5)
        assert cfg == BridgeConfig()
        assert sync.source == "defaults"
        assert channel.seen[0]["type"] == "getConfig"
        assert store.load() == cfg.to_wire()
        await _close(sup, tasks)

    asyncio.run(_main())


def test_startup_prefers_peer_config(tmp_path: Path) -> None:
    def _responder(msg: dict[str, Any]) -> list[dict[str, Any]]:
        if msg.get("type") == "getConfig":
            return [
                {
                    "type": "configResponse",
                    "requestId": msg["requestId"],
                    "success": True,
                    "config": {"port": 9200, "apiToken": "peer-token"},
                }
            ]
        return []

    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path, _responder)
        store.path.write_text(json.dumps({"port": 9123, "apiToken": "disk"}), encoding="utf-8")
        cfg = await sync.initialize(connect_timeout=0.5)
        assert (cfg.port, cfg.api_token) == (9200, "peer-token")
        assert sync.source == "peer"
        assert store.load() == {"version": 1, "port": 9200, "apiToken": "peer-token"}
        await _close(sup, tasks)

    asyncio.run(_main())


def test_startup_survives_peer_rejection(tmp_path: Path) -> None:
    def _responder(msg: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"type": "configResponse", "requestId": msg["requestId"], "success": False, "error": "storage locked"}]

    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path, _responder)
        store.path.write_text(json.dumps({"port": 9124}), encoding="utf-8")
        cfg = await sync.initialize(connect_timeout=0.5)
        assert cfg.port == 9124
        assert sync.source == "store"
        await _close(sup, tasks)

    asyncio.run(_main())


def test_migrate_uses_typed_set_config_when_acknowledged(tmp_path: Path) -> None:
    def _responder(msg: dict[str, Any]) -> list[dict[str, Any]]:
        if msg.get("type") == "setConfig":
            return [{"type": "configResponse", "requestId": msg["requestId"], "success": True, "config": msg["config"]}]
        return []

    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path, _responder)
        assert await sync.migrate() == "typed"
        assert channel.seen[-1]["type"] == "setConfig"
        assert channel.seen[-1]["config"] == sync.config.to_wire()
        await _close(sup, tasks)

    asyncio.run(_main())


def test_migrate_falls_back_to_legacy_message(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path, timeout=0.05)
        assert await sync.migrate() == "legacy"
        assert [m["type"] for m in channel.seen] == ["setConfig", "config"]
        assert channel.seen[-1] == {"type": "config", "config": sync.config.to_wire()}
        await _close(sup, tasks)

    asyncio.run(_main())


def test_inbound_set_config_persists_then_restarts(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)
        restarted: list[tuple[int, Any]] = []

        async def _hook(port: int) -> None:
            restarted.append((port, store.load().get("port")))

        sync.set_port_change_hook(_hook)
        channel.peer_send({"type": "setConfig", "requestId": 77, "config": {"port": 9300, "apiToken": "t"}})
        await _until(lambda: any(m.get("requestId") == 77 for m in channel.seen))

        reply = next(m for m in channel.seen if m.get("requestId") == 77)
        assert reply["type"] == "configResponse"
        assert reply["success"] is True
        assert reply["config"] == {"version": 1, "port": 9300, "apiToken": "t"}
        # The listener moved only after the new port was on disk.
        assert restarted == [(9300, 9300)]
        assert sync.config.port == 9300
        await _close(sup, tasks)

    asyncio.run(_main())


def test_inbound_set_config_rejects_invalid_port(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)
        before = sync.config
        channel.peer_send({"type": "setConfig", "requestId": 5, "config": {"port": 80}})
        await _until(lambda: any(m.get("requestId") == 5 for m in channel.seen))

        reply = next(m for m in channel.seen if m.get("requestId") == 5)
        assert reply["success"] is False
        assert "Port" in reply["error"]
        assert reply["config"]["port"] == before.port
        assert sync.config == before
        assert store.load() == {}
        await _close(sup, tasks)

    asyncio.run(_main())


def test_inbound_get_config_replies_with_current(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)
        await sync.apply({"apiToken": "abc"})
        channel.peer_send({"type": "getConfig", "requestId": 11})
        await _until(lambda: any(m.get("requestId") == 11 for m in channel.seen))
        reply = next(m for m in channel.seen if m.get("requestId") == 11)
        assert reply["success"] is True
        assert reply["config"]["apiToken"] == "abc"
        await _close(sup, tasks)

    asyncio.run(_main())


def test_persist_failure_leaves_config_unchanged(tmp_path: Path) -> None:
    from native_servers.tab_bridge.config_store import ConfigStore
    from native_servers.tab_bridge.config_sync import ConfigSynchronizer
    from native_servers.tab_bridge.correlator import RequestCorrelator
    from native_servers.tab_bridge.errors import PersistError
    from native_servers.tab_bridge.supervisor import ConnectionSupervisor

    async def _main() -> None:
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        calls: list[int] = []

        async def _hook(port: int) -> None:
            calls.append(port)

        async def _never():  # noqa: ANN202
            raise OSError("unused")

        sync = ConfigSynchronizer(
            ConnectionSupervisor(_never),
            RequestCorrelator(),
            ConfigStore(blocker / "config.json"),
            on_port_change=_hook,
        )
        before = sync.config
        with pytest.raises(PersistError):
            await sync.apply({"port": 9400})
        assert sync.config == before
        assert calls == []

    asyncio.run(_main())


def test_failed_restart_rolls_port_back(tmp_path: Path) -> None:
    from native_servers.tab_bridge.config import DEFAULT_PORT
    from native_servers.tab_bridge.config_store import ConfigStore
    from native_servers.tab_bridge.config_sync import ConfigSynchronizer
    from native_servers.tab_bridge.correlator import RequestCorrelator
    from native_servers.tab_bridge.errors import ValidationError
    from native_servers.tab_bridge.supervisor import ConnectionSupervisor

    async def _main() -> None:
        async def _hook(port: int) -> None:
            raise OSError(98, "Address already in use")

        async def _never():  # noqa: ANN202
            raise OSError("unused")

        store = ConfigStore(tmp_path / "config.json")
        sync = ConfigSynchronizer(ConnectionSupervisor(_never), RequestCorrelator(), store, on_port_change=_hook)
        with pytest.raises(ValidationError, match="Cannot listen on port 9500"):
            await sync.apply({"port": 9500, "apiToken": "kept"})
        assert sync.config.port == DEFAULT_PORT
        assert sync.config.api_token == "kept"
        assert store.load()["port"] == DEFAULT_PORT

    asyncio.run(_main())


def test_legacy_config_message_moves_port_without_reply(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)
        restarted: list[int] = []

        async def _hook(port: int) -> None:
            restarted.append(port)

        sync.set_port_change_hook(_hook)
        channel.peer_send({"type": "config", "config": {"port": 9600, "apiToken": "legacy"}})
        await _until(lambda: restarted == [9600])

        assert sync.config.port == 9600
        assert sync.config.api_token == "legacy"
        assert store.load() == {"version": 1, "port": 9600, "apiToken": "legacy"}
        await asyncio.sleep(0.05)
        assert channel.seen == []
        await _close(sup, tasks)

    asyncio.run(_main())


def test_legacy_config_with_invalid_port_is_ignored(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)
        before = sync.config
        channel.peer_send({"type": "config", "config": {"port": 70000}})
        # A later getConfig is answered only after the legacy message was handled.
        channel.peer_send({"type": "getConfig", "requestId": 3})
        await _until(lambda: any(m.get("requestId") == 3 for m in channel.seen))

        assert [m["requestId"] for m in channel.seen] == [3]
        assert channel.seen[0]["config"]["port"] == before.port
        assert sync.config == before
        assert store.load() == {}
        await _close(sup, tasks)

    asyncio.run(_main())


def test_set_config_is_answered_when_restart_hook_fails_unexpectedly(tmp_path: Path) -> None:
    async def _main() -> None:
        sup, sync, store, channel, tasks = await _harness(tmp_path)

        async def _hook(port: int) -> None:
            raise RuntimeError("listener in an unexpected state")

        sync.set_port_change_hook(_hook)
        channel.peer_send({"type": "setConfig", "requestId": 41, "config": {"port": 9700}})
        await _until(lambda: any(m.get("requestId") == 41 for m in channel.seen))

        reply = next(m for m in channel.seen if m.get("requestId") == 41)
        assert reply["type"] == "configResponse"
        assert reply["success"] is False
        assert "unexpected state" in reply["error"]
        await _close(sup, tasks)

    asyncio.run(_main())
