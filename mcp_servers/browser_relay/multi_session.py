"""Counterpart-side view of every relay server in the scan range.

Each relay server (one per automation client) gets its own Session, with its
own connection and attached tab. Servers are found by probing the discovery
document on every port in the range, periodically.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from typing import Any

from . import discovery
from .alarms import AlarmScheduler
from .config import RelayConfig
from .errors import SessionNotFound
from .relay_client import RelayClient, local_relay_url
from .session import STATUS_CONNECTED, STATUS_CONNECTING, STATUS_DISCONNECTED, BrowserApi, Session

_LOGGER = logging.getLogger("mcp.browser_relay.multi_session")

SessionHandler = Callable[[dict[str, Any], Session], Any]
ClientFactory = Callable[[str], RelayClient]

SESSION_PORT_PARAM = "_sessionPort"


def _abandoned(session: Session) -> bool:
    """Disconnected with reconnection turned off, e.g. replaced by another counterpart."""
    conn = session.connection
    return session.status == STATUS_DISCONNECTED and conn is not None and not conn.auto_connect_enabled


class MultiSessionManager:
    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        browser: BrowserApi | None = None,
        build_timestamp: str | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.browser = browser
        self.build_timestamp = build_timestamp
        self.host = self.config.host
        self.alarms = AlarmScheduler()
        self._client_factory = client_factory or self._default_client

        self._sessions: dict[int, Session] = {}
        self._active_port: int | None = None
        self._command_handlers: dict[str, SessionHandler] = {}
        self._connecting: set[int] = set()
        # port -> session id of a server another counterpart took over; not rejoined until it restarts.
        self._yielded: dict[int, str] = {}
        self._scan_task: asyncio.Task | None = None
        self._scan_lock = asyncio.Lock()

    def _default_client(self, url: str) -> RelayClient:
        return RelayClient(url, config=self.config, build_timestamp=self.build_timestamp, alarms=self.alarms)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        _LOGGER.info("Starting multi-session manager (ports %s-%s)", *self.config.port_range)
        self.alarms.start()
        await self.scan_for_servers()
        if self._scan_task is None or self._scan_task.done():
            self._scan_task = asyncio.create_task(self._scan_loop())

    async def stop(self) -> None:
        task = self._scan_task
        self._scan_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for session in list(self._sessions.values()):
            session.status = STATUS_DISCONNECTED
            if session.connection is not None:
                await session.connection.disconnect()
        self._sessions.clear()
        self._active_port = None
        await self.alarms.stop()
        _LOGGER.info("Multi-session manager stopped")

    async def _scan_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.scan_interval)
            try:
                await self.scan_for_servers()
            except Exception:
                _LOGGER.exception("scan failed")

    def wake(self) -> int:
        """Fire overdue reconnect alarms now (call after the host resumes from suspension)."""
        return self.alarms.wake()

    # ─────────────────────────────────────────────────────────────────────────
    # Discovery
    # ─────────────────────────────────────────────────────────────────────────

    async def scan_for_servers(self) -> dict[str, list[int] | int]:
        async with self._scan_lock:
            found = await discovery.scan_ports(
                self.config.scan_ports(),
                host=self.host,
                timeout=self.config.probe_timeout,
            )

            new_ports: list[int] = []
            dead_ports: list[int] = []
            for port, info in found.items():
                session = self._sessions.get(port)
                if session is None:
                    if port not in self._connecting and self._yielded.get(port) != info.session_id:
                        new_ports.append(port)
                elif session.session_id != info.session_id:
                    # Same port, different server: drop the old session's tab state entirely.
                    _LOGGER.info(
                        "Session on port %s changed (%s -> %s)", port, session.session_id, info.session_id
                    )
                    dead_ports.append(port)
                    new_ports.append(port)
                elif _abandoned(session):
                    _LOGGER.info("Session %s on port %s was taken over; dropping it", session.session_id, port)
                    self._yielded[port] = info.session_id
                    dead_ports.append(port)
            for port in list(self._sessions):
                if port not in found:
                    dead_ports.append(port)
            for port in list(self._yielded):
                if port not in found:
                    del self._yielded[port]

            for port in dead_ports:
                await self.disconnect_from_server(port)
            if new_ports:
                await asyncio.gather(*(self.connect_to_server(p) for p in new_ports))

            if new_ports or dead_ports:
                _LOGGER.info("Active sessions: %d", len(self._sessions))
            return {"new": sorted(new_ports), "dead": sorted(dead_ports), "total": len(self._sessions)}

    async def connect_to_server(self, port: int) -> Session | None:
        port = int(port)
        existing = self._sessions.get(port)
        if existing is not None:
            return existing
        if port in self._connecting:
            return None

        self._connecting.add(port)
        self._yielded.pop(port, None)
        try:
            info = await discovery.probe_port_async(self.host, port, timeout=self.config.probe_timeout)
            if info is None:
                _LOGGER.info("No relay server on port %s", port)
                return None

            session = Session(port, info.session_id, self.browser)
            session.status = STATUS_CONNECTING
            client = self._client_factory(local_relay_url(port, self.host))

            def _on_session_info(params: dict[str, Any]) -> None:
                sid = str(params.get("sessionId") or "")
                if sid:
                    session.session_id = sid

            client.register_notification_handler("session_info", _on_session_info)
            for method in self._command_handlers:
                client.register_command_handler(method, self._session_handler(method, session))
            client.events.subscribe("connect", lambda: setattr(session, "status", STATUS_CONNECTED))
            client.events.subscribe("disconnect", lambda: setattr(session, "status", STATUS_DISCONNECTED))

            session.connection = client
            self._sessions[port] = session
            try:
                await client.connect()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.info("Failed to connect to port %s: %s", port, exc)
                if self._sessions.get(port) is session:
                    del self._sessions[port]
                return None

            client.enable_auto_connect()
            session.status = STATUS_CONNECTED
            if self._active_port not in self._sessions:
                self._active_port = port
            _LOGGER.info("Connected to session %s on port %s", session.session_id, port)
            return session
        finally:
            self._connecting.discard(port)

    async def disconnect_from_server(self, port: int) -> None:
        port = int(port)
        session = self._sessions.get(port)
        if session is None:
            return
        _LOGGER.info("Disconnecting from session %s on port %s", session.session_id, port)

        # The tab stays open; only its badge shows the session ended.
        if session.attached_tab_id is not None:
            await session.mark_tab_disconnected()
        session.status = STATUS_DISCONNECTED
        if session.connection is not None:
            await session.connection.disconnect()
        self._sessions.pop(port, None)

        if self._active_port == port:
            remaining = list(self._sessions)
            self._active_port = remaining[0] if remaining else None

    # ─────────────────────────────────────────────────────────────────────────
    # Command handlers
    # ─────────────────────────────────────────────────────────────────────────

    def register_command_handler(self, method: str, handler: SessionHandler) -> None:
        """Register ``handler(params, session)``; replaces any earlier handler for ``method``."""
        self._command_handlers[method] = handler
        for session in self._sessions.values():
            if session.connection is not None:
                session.connection.register_command_handler(method, self._session_handler(method, session))

    def _session_handler(self, method: str, session: Session) -> Callable[[dict[str, Any]], Any]:
        async def _call(params: dict[str, Any]) -> Any:
            handler = self._command_handlers.get(method)
            if handler is None:
                raise RuntimeError(f"Unknown method: {method}")
            session.update_activity()
            res = handler(params, session)
            if inspect.isawaitable(res):
                res = await res
            return res

        return _call

    def install_tab_handlers(self) -> None:
        """Session-scoped tab commands, answered from the session's own tab state."""

        async def _get_tabs(params: dict[str, Any], session: Session) -> Any:
            return {"tabs": await session.list_tabs()}

        async def _create_tab(params: dict[str, Any], session: Session) -> Any:
            tab = await session.create_tab(
                str(params.get("url") or "about:blank"),
                activate=params.get("activate") is not False,
                stealth=bool(params.get("stealth")),
            )
            return {"tab": tab, "currentTab": session.attached_tab_info}

        async def _select_tab(params: dict[str, Any], session: Session) -> Any:
            tab = await session.select_tab(
                int(params.get("tabIndex", -1)),
                activate=bool(params.get("activate")),
                stealth=bool(params.get("stealth")),
            )
            return {"tab": tab, "currentTab": session.attached_tab_info}

        self.register_command_handler("getTabs", _get_tabs)
        self.register_command_handler("createTab", _create_tab)
        self.register_command_handler("selectTab", _select_tab)

    # ─────────────────────────────────────────────────────────────────────────
    # Routing + accessors
    # ─────────────────────────────────────────────────────────────────────────

    def route_command(self, command: str, params: dict[str, Any] | None = None) -> Session:
        target = self._active_port
        if params and SESSION_PORT_PARAM in params:
            raw = params.pop(SESSION_PORT_PARAM)
            if raw is not None:
                try:
                    target = int(raw)
                except (TypeError, ValueError) as exc:
                    raise SessionNotFound(raw) from exc

        session = self._sessions.get(target) if target is not None else None
        if session is None or session.connection is None or _abandoned(session):
            raise SessionNotFound(target)
        _LOGGER.debug("route %s -> port %s", command, target)
        session.update_activity()
        return session

    def get_session(self, port: int) -> Session | None:
        return self._sessions.get(int(port))

    def get_active_session(self) -> Session | None:
        if self._active_port is None:
            return None
        return self._sessions.get(self._active_port)

    def set_active_session(self, port: int) -> Session:
        session = self._sessions.get(int(port))
        if session is None:
            raise SessionNotFound(port)
        self._active_port = int(port)
        _LOGGER.info("Active session set to port %s", port)
        return session

    def get_all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def active_port(self) -> int | None:
        return self._active_port

    async def mark_tab_connected(self, session: Session) -> bool:
        return await session.mark_tab_connected()

    def status_summary(self) -> dict[str, Any]:
        return {
            "totalSessions": len(self._sessions),
            "activePort": self._active_port,
            "sessions": [s.summary() for s in self._sessions.values()],
        }
