"""Tool schema definitions."""

from __future__ import annotations

from typing import Any

_SCHEMA = "http://json-schema.org/draft-07/schema#"

ENABLE_TOOL: dict[str, Any] = {
    "name": "enable",
    "description": """Activate browser automation.
USAGE:
- Local browser (free mode): enable(client_id="my-project")
- Force local even when logged in: enable(client_id="my-project", force_free=true)

Logged-in users connect through the remote relay. With several browsers
available the state becomes authenticated_waiting: call browser_connect next.""",
    "inputSchema": {
        "$schema": _SCHEMA,
        "type": "object",
        "properties": {
            "client_id": {
                "type": "string",
                "description": "Stable, human-readable name for this project (shown in the extension)",
            },
            "force_free": {
                "type": "boolean",
                "default": False,
                "description": "Use the local relay server even when logged in",
            },
        },
        "required": ["client_id"],
        "additionalProperties": False,
    },
}

DISABLE_TOOL: dict[str, Any] = {
    "name": "disable",
    "description": "Deactivate browser automation and release the port / remote connection.",
    "inputSchema": {"$schema": _SCHEMA, "type": "object", "properties": {}, "additionalProperties": False},
}

STATUS_TOOL: dict[str, Any] = {
    "name": "status",
    "description": "Current connection state, mode, browser and attached tab.",
    "inputSchema": {"$schema": _SCHEMA, "type": "object", "properties": {}, "additionalProperties": False},
}

BROWSER_LIST_TOOL: dict[str, Any] = {
    "name": "browser_list",
    "description": "List browsers connected to the remote relay (pro mode only).",
    "inputSchema": {"$schema": _SCHEMA, "type": "object", "properties": {}, "additionalProperties": False},
}

BROWSER_CONNECT_TOOL: dict[str, Any] = {
    "name": "browser_connect",
    "description": """Connect to (or switch to) a browser from browser_list (pro mode only).
USAGE:
- browser_connect(browser_id="chrome-abc123")""",
    "inputSchema": {
        "$schema": _SCHEMA,
        "type": "object",
        "properties": {"browser_id": {"type": "string", "description": "Browser id from enable/browser_list"}},
        "required": ["browser_id"],
        "additionalProperties": False,
    },
}

AUTH_TOOL: dict[str, Any] = {
    "name": "auth",
    "description": """Inspect or clear the stored remote-relay login.
USAGE:
- auth(action="status")
- auth(action="logout")""",
    "inputSchema": {
        "$schema": _SCHEMA,
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": ["status", "logout"], "default": "status"},
        },
        "additionalProperties": False,
    },
}

BROWSER_COMMAND_TOOL: dict[str, Any] = {
    "name": "browser_command",
    "description": """Forward an automation command to the connected browser extension.
USAGE:
- List tabs: browser_command(method="getTabs")
- Attach to a tab: browser_command(method="selectTab", params={"tabIndex": 2})
- New tab: browser_command(method="createTab", params={"url": "https://example.com"})
- Build info: browser_command(method="get_build_info", timeout=5)""",
    "inputSchema": {
        "$schema": _SCHEMA,
        "type": "object",
        "properties": {
            "method": {"type": "string", "description": "Extension command name"},
            "params": {"type": "object", "description": "Command parameters", "default": {}},
            "timeout": {
                "type": "number",
                "minimum": 0.05,
                "maximum": 600,
                "description": "Seconds to wait for the response (default 30)",
            },
        },
        "required": ["method"],
        "additionalProperties": False,
    },
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    ENABLE_TOOL,
    DISABLE_TOOL,
    STATUS_TOOL,
    BROWSER_LIST_TOOL,
    BROWSER_CONNECT_TOOL,
    AUTH_TOOL,
    BROWSER_COMMAND_TOOL,
]
