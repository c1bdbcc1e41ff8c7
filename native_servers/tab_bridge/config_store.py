"""Durable config store: one small JSON file in the per-user config directory."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .config import BridgeConfig
from .errors import PersistError

_LOGGER = logging.getLogger("tab_bridge.config_store")

APP_DIR_NAME = "tab-bridge"
CONFIG_FILE_NAME = "config.json"
_KNOWN_KEYS = ("version", "port", "apiToken")


def user_config_root(platform: str | None = None, home: Path | None = None) -> Path:
    platform = platform or sys.platform
    home = home or Path.home()
    if platform == "darwin":
        return home / "Library" / "Application Support"
    if platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) if appdata else (home / "AppData" / "Roaming")
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if isinstance(xdg, str) and xdg.strip():
        return Path(xdg.strip()).expanduser()
    return home / ".config"


def config_dir(override: str | None = None) -> Path:
    raw = override or os.environ.get("TAB_BRIDGE_CONFIG_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()
    return user_config_root() / APP_DIR_NAME


class ConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (config_dir() / CONFIG_FILE_NAME)

    @classmethod
    def in_dir(cls, directory: str | Path | None) -> ConfigStore:
        base = config_dir(str(directory) if directory else None)
        return cls(base / CONFIG_FILE_NAME)

    def load(self) -> dict[str, Any]:
        """Return the recognised fields present on disk; ``{}`` if absent or corrupt."""
        p = self.path
        try:
            if not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _LOGGER.warning("ignoring unreadable config file %s: %s", p, exc)
            return {}
        if not isinstance(obj, dict):
            _LOGGER.warning("ignoring config file %s: not a JSON object", p)
            return {}
        return {k: obj[k] for k in _KNOWN_KEYS if k in obj and obj[k] is not None}

    def save(self, config: BridgeConfig) -> None:
        p = self.path
        text = json.dumps(config.to_wire(), ensure_ascii=True, indent=2) + "\n"
        tmp = p.with_suffix(p.suffix + ".tmp")
        try:
            p.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            with contextlib.suppress(OSError):
                os.chmod(p.parent, 0o700)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(text)
                fp.flush()
                os.fsync(fp.fileno())
            tmp.replace(p)
            with contextlib.suppress(OSError):
                os.chmod(p, 0o600)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise PersistError(f"Failed to write config to {p}: {exc}") from exc
        _LOGGER.info("saved config to %s (port=%s)", p, config.port)
