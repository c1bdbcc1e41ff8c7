from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any

from .envelope import BridgeFailure, BridgeResponse, ConfigReply
from .errors import RequestTimeout, UnmatchedResponse

_LOGGER = logging.getLogger("tab_bridge.correlator")

CONFIG_CALL_TIMEOUT = 5.0


class CallKind(enum.Enum):
    HTTP = "http"
    CONFIG = "config"


def kind_of(payload: Any) -> CallKind | None:
    if isinstance(payload, (BridgeResponse, BridgeFailure)):
        return CallKind.HTTP
    if isinstance(payload, ConfigReply):
        return CallKind.CONFIG
    return None


@dataclass(slots=True)
class PendingEntry:
    request_id: int
    kind: CallKind
    future: asyncio.Future
    deadline: float | None = None
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """In-flight request table: request id -> completion future.

    Both the HTTP bridge and the config sub-protocol draw ids from one counter,
    so an id is unique across kinds; the entry kind is checked on resolution so
    a config reply can never complete an HTTP call (or vice versa).

    The table lives on the event loop thread. Resolution, expiry and fail-all
    all remove the entry before delivering, so exactly one of them ever
    completes a given future.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingEntry] = {}
        self.unmatched = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def next_id(self) -> int:
        return next(self._ids)

    def register(self, request_id: int, kind: CallKind, timeout: float | None = None) -> asyncio.Future:
        if request_id in self._pending:
            raise ValueError(f"request id already pending: {request_id}")
        loop = asyncio.get_running_loop()
        entry = PendingEntry(request_id=int(request_id), kind=kind, future=loop.create_future())
        if timeout is not None:
            entry.deadline = time.monotonic() + float(timeout)
            entry.timer = loop.call_later(float(timeout), self._expire, entry.request_id, float(timeout))
        self._pending[entry.request_id] = entry
        return entry.future

    def _take(self, request_id: int) -> PendingEntry | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def resolve(self, request_id: int, payload: Any, *, kind: CallKind | None = None) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            self._unmatched(UnmatchedResponse(request_id))
            return False
        if kind is not None and entry.kind is not kind:
            self._unmatched(UnmatchedResponse(request_id, f"{kind.value} response for {entry.kind.value} call"))
            return False
        self._take(request_id)
        if not entry.future.done():
            entry.future.set_result(payload)
        return True

    def fail(self, request_id: int, exc: BaseException) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(exc)
        return True

    def fail_all(self, exc: BaseException) -> int:
        ids = list(self._pending)
        for request_id in ids:
            self.fail(request_id, exc)
        if ids:
            _LOGGER.warning("failed %d pending request(s): %s", len(ids), exc)
        return len(ids)

    def discard(self, request_id: int) -> None:
        entry = self._take(request_id)
        if entry is not None and not entry.future.done():
            entry.future.cancel()

    def _expire(self, request_id: int, timeout: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        _LOGGER.warning("request %s (%s) timed out after %.1fs", request_id, entry.kind.value, timeout)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeout(request_id, timeout))

    def _unmatched(self, err: UnmatchedResponse) -> None:
        self.unmatched += 1
        _LOGGER.info("dropping response: %s", err)

    async def run(self, inbox: asyncio.Queue) -> None:
        """Drain decoded responses published by the connection supervisor."""
        while True:
            payload = await inbox.get()
            try:
                self.resolve(payload.request_id, payload, kind=kind_of(payload))
            except Exception:
                _LOGGER.exception("failed to route response %r", payload)
            finally:
                inbox.task_done()
