"""Native Messaging host for the tab bridge.

Launched by the browser when the extension calls ``connectNative()``:
- Extension <-> host: Native Messaging framing over this process's stdin/stdout.
- HTTP clients <-> host: a small local HTTP API (default 127.0.0.1:8090).

For development the peer can instead be a child process (``--peer-command``)
or a WebSocket endpoint (``--peer-url``); those bindings reconnect forever.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys

from .config import BridgeSettings
from .host import HostStartupError, run_host

EXIT_OK = 0
EXIT_BIND_FAILED = 2


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tab-bridge-host", description=__doc__.splitlines()[0])
    # Browsers pass the caller origin (and on Windows a window handle) as positional args.
    parser.add_argument("origin", nargs="*", help=argparse.SUPPRESS)
    parser.add_argument("--host", help="HTTP listen address (default 127.0.0.1)")
    parser.add_argument("--config-dir", help="directory holding config.json")
    parser.add_argument("--peer-command", help="spawn the peer as a child process (shell-style command line)")
    parser.add_argument("--peer-url", help="connect to the peer over a WebSocket URL")
    parser.add_argument("--reconnect-delay", type=float, help="seconds between reconnect attempts")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    args, _unknown = parser.parse_known_args(argv)
    return args


def settings_from_args(args: argparse.Namespace) -> BridgeSettings:
    settings = BridgeSettings.from_env()
    if args.host:
        settings.host = args.host
    if args.config_dir:
        settings.config_dir = args.config_dir
    if args.peer_command:
        settings.peer_command = shlex.split(args.peer_command)
    if args.peer_url:
        settings.peer_url = args.peer_url
    if args.reconnect_delay is not None:
        settings.reconnect_delay = max(0.0, args.reconnect_delay)
    if args.log_level:
        settings.log_level = args.log_level.strip().upper()
    return settings


def main(argv: list[str] | None = None) -> None:
    settings = settings_from_args(_parse_args(argv))
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger("tab_bridge")
    try:
        asyncio.run(run_host(settings))
    except HostStartupError as exc:
        logger.error("%s", exc)
        raise SystemExit(EXIT_BIND_FAILED) from None
    except KeyboardInterrupt:
        raise SystemExit(EXIT_OK) from None
    raise SystemExit(EXIT_OK)


if __name__ == "__main__":
    main()
