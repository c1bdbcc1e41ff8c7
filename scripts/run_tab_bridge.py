#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

# stdout carries native messaging frames; the banner goes to stderr.
print(
    f"[tab-bridge] config_dir={os.environ.get('TAB_BRIDGE_CONFIG_DIR', 'auto')} | "
    f"host={os.environ.get('TAB_BRIDGE_HOST', '127.0.0.1')} | "
    f"peer={os.environ.get('TAB_BRIDGE_PEER_URL') or os.environ.get('TAB_BRIDGE_PEER_COMMAND') or 'stdio'}",
    file=sys.stderr,
)

from native_servers.tab_bridge.native_host import main  # noqa: E402

if __name__ == "__main__":
    main()
