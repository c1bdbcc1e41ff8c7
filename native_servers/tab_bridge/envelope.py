"""Tagged envelopes carried inside frames.

Every message the host writes has a mandatory ``type``. Untyped messages from
older peers are still accepted: ``method``+``path`` means a bridging request and
``response``/``error`` means a bridging response. ``type`` is always checked first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .errors import FramingError

HTTP_REQUEST = "httpRequest"
HTTP_RESPONSE = "httpResponse"
GET_CONFIG = "getConfig"
SET_CONFIG = "setConfig"
CONFIG_RESPONSE = "configResponse"
LEGACY_CONFIG = "config"


@dataclass(frozen=True, slots=True)
class BridgeRequest:
    request_id: int
    method: str
    path: str
    query: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    kind = HTTP_REQUEST

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": HTTP_REQUEST,
            "requestId": self.request_id,
            "method": self.method,
            "path": self.path,
            "query": dict(self.query),
            "headers": dict(self.headers),
            "body": self.body,
        }


@dataclass(frozen=True, slots=True)
class BridgeResponse:
    request_id: int
    status: int
    content_type: str = "text/plain"
    body: str = ""

    kind = HTTP_RESPONSE

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": HTTP_RESPONSE,
            "requestId": self.request_id,
            "response": {"status": self.status, "contentType": self.content_type, "body": self.body},
        }


@dataclass(frozen=True, slots=True)
class BridgeFailure:
    request_id: int
    error: str

    kind = HTTP_RESPONSE

    def to_wire(self) -> dict[str, Any]:
        return {"type": HTTP_RESPONSE, "requestId": self.request_id, "error": self.error}


@dataclass(frozen=True, slots=True)
class ConfigGet:
    request_id: int

    kind = GET_CONFIG

    def to_wire(self) -> dict[str, Any]:
        return {"type": GET_CONFIG, "requestId": self.request_id}


@dataclass(frozen=True, slots=True)
class ConfigSet:
    request_id: int
    config: dict[str, Any]

    kind = SET_CONFIG

    def to_wire(self) -> dict[str, Any]:
        return {"type": SET_CONFIG, "requestId": self.request_id, "config": dict(self.config)}


@dataclass(frozen=True, slots=True)
class ConfigReply:
    request_id: int
    success: bool
    config: dict[str, Any] | None = None
    error: str | None = None

    kind = CONFIG_RESPONSE

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": CONFIG_RESPONSE, "requestId": self.request_id, "success": bool(self.success)}
        if self.config is not None:
            out["config"] = dict(self.config)
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True, slots=True)
class LegacyConfig:
    config: dict[str, Any]

    kind = LEGACY_CONFIG

    def to_wire(self) -> dict[str, Any]:
        return {"type": LEGACY_CONFIG, "config": dict(self.config)}


Envelope = Union[BridgeRequest, BridgeResponse, BridgeFailure, ConfigGet, ConfigSet, ConfigReply, LegacyConfig]

# Replies the correlator resolves; everything else is an inbound request.
RESPONSE_TYPES = (BridgeResponse, BridgeFailure, ConfigReply)


def _request_id(msg: dict[str, Any]) -> int:
    raw = msg.get("requestId")
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise FramingError(f"missing or invalid requestId: {raw!r}")
    try:
        return int(raw)
    except ValueError as exc:
        raise FramingError(f"invalid requestId: {raw!r}") from exc


def _config_obj(msg: dict[str, Any], *, required: bool) -> dict[str, Any] | None:
    cfg = msg.get("config")
    if isinstance(cfg, dict):
        return cfg
    if required:
        raise FramingError("config payload must be an object")
    return None


def _bridge_request(msg: dict[str, Any]) -> BridgeRequest:
    query = msg.get("query")
    headers = msg.get("headers")
    body = msg.get("body")
    return BridgeRequest(
        request_id=_request_id(msg),
        method=str(msg.get("method") or ""),
        path=str(msg.get("path") or ""),
        query=query if isinstance(query, dict) else {},
        headers=headers if isinstance(headers, dict) else {},
        body=body if isinstance(body, str) else "",
    )


def _bridge_response(msg: dict[str, Any]) -> BridgeResponse | BridgeFailure:
    req_id = _request_id(msg)
    err = msg.get("error")
    if err is not None and err is not False and err != "":
        return BridgeFailure(request_id=req_id, error=str(err))
    resp = msg.get("response")
    if not isinstance(resp, dict):
        raise FramingError("bridging response without response object")
    status = resp.get("status")
    if isinstance(status, bool) or not isinstance(status, int) or not 100 <= status <= 599:
        raise FramingError(f"invalid response status: {status!r}")
    body = resp.get("body")
    return BridgeResponse(
        request_id=req_id,
        status=status,
        content_type=str(resp.get("contentType") or "text/plain"),
        body=body if isinstance(body, str) else ("" if body is None else str(body)),
    )


def parse_envelope(msg: dict[str, Any]) -> Envelope:
    mtype = msg.get("type")
    if mtype is not None:
        if mtype == GET_CONFIG:
            return ConfigGet(request_id=_request_id(msg))
        if mtype == SET_CONFIG:
            return ConfigSet(request_id=_request_id(msg), config=_config_obj(msg, required=True) or {})
        if mtype == CONFIG_RESPONSE:
            err = msg.get("error")
            return ConfigReply(
                request_id=_request_id(msg),
                success=bool(msg.get("success")),
                config=_config_obj(msg, required=False),
                error=str(err) if err else None,
            )
        if mtype == LEGACY_CONFIG:
            return LegacyConfig(config=_config_obj(msg, required=True) or {})
        if mtype == HTTP_REQUEST:
            return _bridge_request(msg)
        if mtype == HTTP_RESPONSE:
            return _bridge_response(msg)
        raise FramingError(f"unknown message type: {mtype!r}")

    if "method" in msg and "path" in msg:
        return _bridge_request(msg)
    if "response" in msg or "error" in msg:
        return _bridge_response(msg)
    raise FramingError("untyped message is neither a bridging request nor a response")
