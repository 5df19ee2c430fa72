"""Tool handlers.

Each handler takes the state machine and the tool arguments and returns a
ToolResult. Typed relay errors propagate; the MCP dispatcher renders them.
"""

from __future__ import annotations

from typing import Any

from ..state_machine import ConnectionStateMachine
from .types import ToolResult


def _header(machine: ConnectionStateMachine) -> str:
    return machine.status_header()


async def handle_enable(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    result = await machine.enable(args.get("client_id"), force_local=args.get("force_free") is True)
    return ToolResult.json(result, header=_header(machine))


async def handle_disable(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    result = await machine.disable()
    return ToolResult.json(result, header=_header(machine))


async def handle_status(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(machine.status().to_dict(), header=_header(machine))


async def handle_browser_list(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    browsers = await machine.browser_list()
    current = machine.status().connected_browser_name
    return ToolResult.json(
        {
            "browsers": [{**b, **({"current": True} if current and b.get("name") == current else {})} for b in browsers],
            "total": len(browsers),
        },
        header=_header(machine),
    )


async def handle_browser_connect(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    result = await machine.browser_connect(args.get("browser_id"))
    return ToolResult.json(result, header=_header(machine))


async def handle_auth(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    action = str(args.get("action") or "status").strip().lower()
    if action == "status":
        return ToolResult.json(machine.auth_status())
    if action == "logout":
        return ToolResult.json(machine.logout())
    return ToolResult.error(f"Unknown auth action: {action}", tool="auth", kind="invalid_argument")


async def handle_browser_command(machine: ConnectionStateMachine, args: dict[str, Any]) -> ToolResult:
    method = args.get("method")
    if not isinstance(method, str) or not method.strip():
        return ToolResult.error("method is required", tool="browser_command", kind="invalid_argument")
    params = args.get("params")
    if params is not None and not isinstance(params, dict):
        return ToolResult.error("params must be an object", tool="browser_command", kind="invalid_argument")

    timeout: float | None = None
    if args.get("timeout") is not None:
        try:
            timeout = max(0.05, min(float(args["timeout"]), 600.0))
        except (TypeError, ValueError):
            return ToolResult.error("timeout must be a number", tool="browser_command", kind="invalid_argument")

    result = await machine.call(method.strip(), params, timeout=timeout)
    return ToolResult.json({"method": method.strip(), "result": result}, header=_header(machine))
