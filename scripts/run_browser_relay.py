#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[mcp] relay={os.environ.get('MCP_RELAY_HOST', '127.0.0.1')}:{os.environ.get('MCP_RELAY_PORT', '5555')} | "
    f"auto_port={os.environ.get('MCP_RELAY_AUTO_PORT', '1')} | "
    f"tokens={os.environ.get('MCP_RELAY_TOKENS_PATH', '~/.gemini/browser-relay/tokens.json')}",
    file=sys.stderr,
)

from mcp_servers.browser_relay.main import main  # noqa: E402

if __name__ == "__main__":
    main()
