"""Protocol and tool contract definitions.

Single source of truth for the supported MCP protocol versions, the server
identity, the capabilities advertised by initialize and the tool list.
"""

from __future__ import annotations

from typing import Any

from .definitions import TOOL_DEFINITIONS

SERVER_INFO: dict[str, str] = {"name": "browser-relay", "version": "0.1.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

CAPABILITIES: dict[str, Any] = {
    "logging": {},
    "tools": {"listChanged": False},
}

INSTRUCTIONS = (
    "Call enable(client_id=...) first. In local mode the browser extension connects to this server; "
    "in pro mode pick a browser with browser_connect when several are available. "
    "Then forward automation commands with browser_command."
)


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": INSTRUCTIONS,
    }


def tools_list() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS
