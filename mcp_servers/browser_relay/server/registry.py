"""
Tool registry with dispatch table for the MCP server.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .types import HandlerFunc, ToolResult

if TYPE_CHECKING:
    from ..state_machine import ConnectionStateMachine

logger = logging.getLogger("mcp.browser_relay.registry")


class ToolRegistry:
    """Registry for tool handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerFunc] = {}

    def register(self, name: str, handler: HandlerFunc) -> None:
        self._handlers[name] = handler

    def register_many(self, handlers: dict[str, HandlerFunc]) -> None:
        self._handlers.update(handlers)

    def get(self, name: str) -> HandlerFunc | None:
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    async def dispatch(self, name: str, machine: ConnectionStateMachine, arguments: dict[str, Any]) -> ToolResult:
        """
        Dispatch a tool call to its handler.

        Raises:
            KeyError: If tool not found
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"Unknown tool: {name}")
        return await handler(machine, arguments)


def create_default_registry() -> ToolRegistry:
    from . import handlers

    registry = ToolRegistry()
    registry.register_many(
        {
            "enable": handlers.handle_enable,
            "disable": handlers.handle_disable,
            "status": handlers.handle_status,
            "browser_list": handlers.handle_browser_list,
            "browser_connect": handlers.handle_browser_connect,
            "auth": handlers.handle_auth,
            "browser_command": handlers.handle_browser_command,
        }
    )
    logger.debug("Registered %d tool handlers", len(registry))
    return registry
