from __future__ import annotations

import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError


def _json_body(body: str) -> dict[str, Any]:
    try:
        params = json.loads(body) if body.strip() else {}
    except ValueError as exc:
        raise ValidationError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(params, dict):
        raise ValidationError("Request body must be a JSON object")
    return params


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _require_tab_id(body: str) -> None:
    if not _is_number(_json_body(body).get("tabId")):
        raise ValidationError("Missing or invalid tabId")


def _require_url(body: str) -> None:
    params = _json_body(body)
    url = params.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Missing url")
    if params.get("windowId") is not None and not _is_number(params.get("windowId")):
        raise ValidationError("Invalid windowId")


@dataclass(frozen=True, slots=True)
class Endpoint:
    method: str
    path: str
    validate: Callable[[str], None] | None = None

    def check(self, body: str) -> None:
        if self.validate is not None:
            self.validate(body)


ENDPOINTS: dict[tuple[str, str], Endpoint] = {
    (e.method, e.path): e
    for e in (
        Endpoint("GET", "/windows"),
        Endpoint("GET", "/tabs"),
        Endpoint("POST", "/switch-tab", _require_tab_id),
        Endpoint("POST", "/open-url", _require_url),
        Endpoint("POST", "/close-tab", _require_tab_id),
    )
}


def match_endpoint(method: str, path: str) -> Endpoint | None:
    return ENDPOINTS.get((str(method or "").upper(), str(path or "")))
