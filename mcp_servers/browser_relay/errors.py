"""Typed failures for the relay.

Every error carries a stable ``kind`` so callers (and the MCP surface) can
branch on it instead of matching message text.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    kind = "relay_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.kind, "message": self.message, **self.details}


class TransportError(RelayError):
    kind = "transport_error"


class PortExhausted(TransportError):
    kind = "port_exhausted"

    def __init__(self, start: int, end: int) -> None:
        super().__init__(f"No available ports in range {start}-{end}", details={"start": start, "end": end})
        self.start = start
        self.end = end


class PortInUse(TransportError):
    kind = "port_in_use"

    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} already in use", details={"port": port})
        self.port = port


class ConnectionClosed(TransportError):
    kind = "connection_closed"


class RequestTimeout(RelayError):
    kind = "request_timeout"

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Request timeout: {method}", details={"method": method, "timeout": timeout})
        self.method = method
        self.timeout = timeout


class NotConnected(RelayError):
    kind = "not_connected"


class CommandError(RelayError):
    """The counterpart answered with an ``error`` member."""

    kind = "command_error"


class SessionNotFound(RelayError):
    kind = "session_not_found"

    def __init__(self, port: Any) -> None:
        super().__init__(f"No active session on port {port}", details={"port": port})
        self.port = port


class StateConflict(RelayError):
    kind = "state_conflict"

    def __init__(
        self,
        message: str,
        *,
        state: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"state": state, **({"reason": reason} if reason else {}), **(details or {})}
        super().__init__(message, details=merged)
        self.state = state
        self.reason = reason


class BrowserNotSelected(StateConflict):
    kind = "browser_not_selected"

    def __init__(self, available: list[dict[str, Any]]) -> None:
        super().__init__(
            "Browser not selected. With multiple browsers available, call browser_connect() after enable().",
            state="authenticated_waiting",
            details={"available_browsers": available},
        )
        self.available = available


class NoCounterpart(RelayError):
    kind = "no_counterpart"


class CounterpartNotFound(RelayError):
    kind = "counterpart_not_found"


class AuthExpired(RelayError):
    kind = "auth_expired"


class AuthInvalid(RelayError):
    kind = "auth_invalid"
