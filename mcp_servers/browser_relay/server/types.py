"""
Type definitions for MCP server responses and handlers.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..errors import RelayError
    from ..state_machine import ConnectionStateMachine


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload for in-process callers and tests; not part of the MCP wire format.
    data: Any | None = None

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")])

    @classmethod
    def json(cls, data: Any, *, header: str | None = None) -> ToolResult:
        body = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        text = f"{header}\n---\n{body}" if header else body
        return cls(content=[ToolContent(type="text", text=text)], data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        tool: str | None = None,
        kind: str = "error",
        details: dict[str, Any] | None = None,
    ) -> ToolResult:
        payload: dict[str, Any] = {"ok": False, "error": kind, "message": message}
        if tool:
            payload["tool"] = tool
        if details:
            payload.update(details)
        body = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        return cls(content=[ToolContent(type="text", text=body)], is_error=True, data=payload)

    @classmethod
    def from_relay_error(cls, exc: RelayError, *, tool: str | None = None) -> ToolResult:
        return cls.error(exc.message, tool=tool, kind=exc.kind, details=exc.details)

    def to_content_list(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.content]


HandlerFunc = Callable[["ConnectionStateMachine", dict[str, Any]], Awaitable[ToolResult]]
