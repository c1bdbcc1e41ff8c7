from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import ValidationError

CONFIG_VERSION = 1
DEFAULT_PORT = 8090
DEFAULT_HOST = "127.0.0.1"
MIN_PORT = 1024
MAX_PORT = 65535


def validate_port(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError(f"Port must be an integer between {MIN_PORT} and {MAX_PORT}, got {raw!r}")
    if raw < MIN_PORT or raw > MAX_PORT:
        raise ValidationError(f"Port must be a number between {MIN_PORT} and {MAX_PORT}, got {raw}")
    return raw


def validate_token(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValidationError("apiToken must be a string")
    return raw.strip()


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """The persisted, peer-synchronized configuration."""

    version: int = CONFIG_VERSION
    port: int = DEFAULT_PORT
    api_token: str = ""

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_token.strip())

    def to_wire(self) -> dict[str, Any]:
        return {"version": self.version, "port": self.port, "apiToken": self.api_token}

    def merged(self, partial: dict[str, Any], *, strict: bool = True) -> BridgeConfig:
        """Return a copy with the recognised fields of ``partial`` applied.

        With ``strict=False`` invalid fields are skipped instead of raising, which
        is what loading a hand-edited file wants.
        """
        changes: dict[str, Any] = {}
        for key, attr, check in (("port", "port", validate_port), ("apiToken", "api_token", validate_token)):
            if key not in partial or partial[key] is None:
                continue
            try:
                changes[attr] = check(partial[key])
            except ValidationError:
                if strict:
                    raise
        raw_version = partial.get("version")
        if isinstance(raw_version, int) and not isinstance(raw_version, bool) and raw_version > 0:
            changes["version"] = raw_version
        return replace(self, **changes) if changes else self


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


@dataclass
class BridgeSettings:
    """Process settings (not synchronized with the peer)."""

    host: str = DEFAULT_HOST
    config_dir: str | None = None
    reconnect_delay: float = 1.0
    config_timeout: float = 5.0
    connect_wait: float = 1.0
    shutdown_timeout: float = 10.0
    peer_command: list[str] = field(default_factory=list)
    peer_url: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> BridgeSettings:
        host = (os.environ.get("TAB_BRIDGE_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST
        config_dir = (os.environ.get("TAB_BRIDGE_CONFIG_DIR") or "").strip() or None
        peer_cmd_raw = os.environ.get("TAB_BRIDGE_PEER_COMMAND") or ""
        peer_url = (os.environ.get("TAB_BRIDGE_PEER_URL") or "").strip() or None
        return cls(
            host=host,
            config_dir=config_dir,
            reconnect_delay=_env_float("TAB_BRIDGE_RECONNECT_DELAY", 1.0),
            config_timeout=_env_float("TAB_BRIDGE_CONFIG_TIMEOUT", 5.0),
            connect_wait=_env_float("TAB_BRIDGE_CONNECT_WAIT", 1.0),
            shutdown_timeout=_env_float("TAB_BRIDGE_SHUTDOWN_TIMEOUT", 10.0),
            peer_command=shlex.split(peer_cmd_raw) if peer_cmd_raw.strip() else [],
            peer_url=peer_url,
            log_level=(os.environ.get("TAB_BRIDGE_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )
