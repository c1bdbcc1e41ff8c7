"""HTTP front door: the local API that HTTP clients call.

Each request is authenticated, validated, then forwarded to the peer as a
bridging envelope; the handler waits on the correlator for the peer's answer.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from .config import DEFAULT_HOST, BridgeConfig
from .correlator import CallKind, RequestCorrelator
from .endpoints import match_endpoint
from .envelope import BridgeFailure, BridgeRequest, BridgeResponse
from .errors import ConnectionLost, ValidationError
from .supervisor import ConnectionSupervisor

_LOGGER = logging.getLogger("tab_bridge.front_door")

_TOKEN_HEADERS = ("X-API-Token", "Authorization")
_REDACTED_HEADERS = {"authorization", "x-api-token", "cookie"}


def _text(status: int, body: str) -> web.Response:
    return web.Response(status=status, text=body, content_type="text/plain")


def _query_dict(request: web.Request) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in request.query.keys():
        if key in out:
            continue
        values = request.query.getall(key)
        out[key] = values[0] if len(values) == 1 else list(values)
    return out


def _forwarded_headers(request: web.Request) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in request.headers.items():
        name = key.lower()
        if name in _REDACTED_HEADERS:
            continue
        out[name] = f"{out[name]}, {value}" if name in out else value
    return out


def _retrieve_outcome(fut: asyncio.Future) -> None:
    # The handler may be gone by the time the peer call fails.
    if not fut.cancelled():
        fut.exception()


def _local_port(transport: Any) -> int | None:
    if transport is None:
        return None
    sockname = transport.get_extra_info("sockname")
    if isinstance(sockname, tuple) and len(sockname) >= 2:
        return int(sockname[1])
    return None


def is_authorized(request: web.Request, config: BridgeConfig) -> bool:
    if not config.auth_enabled:
        return True
    expected = f"Bearer {config.api_token}".encode()
    for header in _TOKEN_HEADERS:
        presented = request.headers.get(header)
        if presented and hmac.compare_digest(presented.encode(), expected):
            return True
    return False


class FrontDoor:
    """aiohttp server bound to one port at a time; the port can move at runtime."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        correlator: RequestCorrelator,
        config_provider: Callable[[], BridgeConfig],
        *,
        host: str = DEFAULT_HOST,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self._supervisor = supervisor
        self._correlator = correlator
        self._config = config_provider
        self.host = host
        self.shutdown_timeout = float(shutdown_timeout)
        self.port: int | None = None

        self.app = self._build_app()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._lock = asyncio.Lock()
        self._busy: set[Any] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def listening(self) -> bool:
        return self._site is not None

    async def start(self, port: int) -> None:
        async with self._lock:
            if self._runner is None:
                runner = web.AppRunner(
                    self.app,
                    handle_signals=False,
                    access_log=None,
                    shutdown_timeout=self.shutdown_timeout,
                )
                await runner.setup()
                self._runner = runner
            await self._bind(port)

    async def restart(self, port: int) -> None:
        """Move the listener to ``port``.

        The old listening socket is closed and idle keep-alive connections on it
        are dropped. Requests already being handled keep their connection until
        the peer's response is written, then that connection closes too.

        When the server is not running the port is only recorded; ``start()``
        binds whatever port the config holds at that point.
        """
        async with self._lock:
            if self._runner is None:
                _LOGGER.info("HTTP server not running; port %s will be used on start", port)
                self.port = int(port)
                return
            old_port = self.port
            old = self._site
            self._site = None
            if old is not None:
                await old.stop()
                _LOGGER.info("stopped listening on %s:%s", self.host, old_port)
            try:
                await self._bind(port)
            except OSError:
                if old_port is not None:
                    with contextlib.suppress(OSError):
                        await self._bind(old_port)
                raise
            if old_port is not None and old_port != self.port:
                self._close_connections(old_port)

    async def stop(self) -> None:
        async with self._lock:
            runner = self._runner
            self._runner = None
            self._site = None
            if runner is not None:
                await runner.cleanup()
                _LOGGER.info("HTTP server stopped")

    async def _bind(self, port: int) -> None:
        if self._runner is None:
            raise RuntimeError("front door runner is not set up")
        site = web.TCPSite(self._runner, self.host, int(port))
        await site.start()
        self._site = site
        self.port = int(port)
        _LOGGER.info("HTTP server listening on %s:%s", self.host, port)
        if self._config().auth_enabled:
            _LOGGER.info("API token authentication is enabled")

    def _close_connections(self, port: int) -> int:
        server = self._runner.server if self._runner is not None else None
        if server is None:
            return 0
        closed = 0
        for conn in server.connections:
            if _local_port(conn.transport) != port:
                continue
            if conn.transport in self._busy:
                conn.close()
            else:
                conn.force_close()
            closed += 1
        if closed:
            _LOGGER.info("closing %d connection(s) left on port %s", closed, port)
        return closed

    # ─────────────────────────────────────────────────────────────────────────
    # Request handling
    # ─────────────────────────────────────────────────────────────────────────

    def _build_app(self) -> web.Application:
        @web.middleware
        async def _track(request: web.Request, handler: Any) -> web.StreamResponse:
            transport = request.transport
            self._busy.add(transport)
            try:
                return await handler(request)
            finally:
                self._busy.discard(transport)

        @web.middleware
        async def _auth(request: web.Request, handler: Any) -> web.StreamResponse:
            if not is_authorized(request, self._config()):
                return _text(401, "Unauthorized: Invalid or missing API token")
            return await handler(request)

        @web.middleware
        async def _errors(request: web.Request, handler: Any) -> web.StreamResponse:
            try:
                return await handler(request)
            except web.HTTPException:
                raise
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("handler failed: %s %s", request.method, request.path)
                return _text(500, str(exc) or exc.__class__.__name__)

        app = web.Application(middlewares=[_track, _errors, _auth])
        app.router.add_route("*", "/{tail:.*}", self._bridge)
        return app

    async def _wait_reply(self, fut: asyncio.Future) -> Any:
        fut.add_done_callback(_retrieve_outcome)
        # Shielded: a client that goes away does not cancel the peer call.
        return await asyncio.shield(fut)

    async def _bridge(self, request: web.Request) -> web.Response:
        endpoint = match_endpoint(request.method, request.path)
        if endpoint is None:
            return _text(404, "Endpoint not found")

        body = await request.text()
        try:
            endpoint.check(body)
        except ValidationError as exc:
            return _text(400, str(exc))

        if not self._supervisor.is_connected():
            return _text(503, "Service Unavailable: peer is not connected")

        req_id = self._correlator.next_id()
        envelope = BridgeRequest(
            request_id=req_id,
            method=request.method,
            path=request.path,
            query=_query_dict(request),
            headers=_forwarded_headers(request),
            body=body,
        )
        fut = self._correlator.register(req_id, CallKind.HTTP)
        try:
            await self._supervisor.send(envelope)
        except ConnectionLost as exc:
            self._correlator.discard(req_id)
            return _text(503, f"Service Unavailable: {exc}")
        _LOGGER.debug("forwarded request %s: %s %s", req_id, request.method, request.path)

        try:
            result = await self._wait_reply(fut)
        except ConnectionLost as exc:
            return _text(503, f"Service Unavailable: {exc}")

        if isinstance(result, BridgeFailure):
            return _text(500, f"Internal Server Error: {result.error}")
        if not isinstance(result, BridgeResponse):
            raise TypeError(f"unexpected reply for request {req_id}: {result!r}")
        return web.Response(
            status=result.status,
            body=result.body.encode("utf-8"),
            headers={"Content-Type": result.content_type},
        )
