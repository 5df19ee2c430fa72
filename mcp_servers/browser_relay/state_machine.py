"""Connection lifecycle for one automation client.

States
- passive: nothing held (initial, and after disable or remote transport loss).
- active: local relay server listening for the extension (free mode).
- connected: bound to one counterpart through the remote relay (pro mode).
- authenticated_waiting: logged in, several counterparts available; waiting
  for ``browser_connect``.

Transitions are serialized; a second transition started while one is running
fails fast with ``transition_in_progress`` instead of queueing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Literal

from .config import RelayConfig
from .credentials import CredentialStore, UserInfo
from .errors import (
    AuthExpired,
    AuthInvalid,
    BrowserNotSelected,
    CounterpartNotFound,
    NoCounterpart,
    RelayError,
    StateConflict,
    TransportError,
)
from .events import Subscription
from .relay_server import RelayServer
from .remote_relay import RemoteRelayConnection
from .server.contract import SERVER_INFO

_LOGGER = logging.getLogger("mcp.browser_relay.state_machine")

State = Literal["passive", "active", "connected", "authenticated_waiting"]

PASSIVE: State = "passive"
ACTIVE: State = "active"
CONNECTED: State = "connected"
AUTHENTICATED_WAITING: State = "authenticated_waiting"

LOCAL_BROWSER_NAME = "Local Browser"

ServerFactory = Callable[[RelayConfig], RelayServer]
RemoteFactory = Callable[[str, RelayConfig], RemoteRelayConnection]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class AttachedTab:
    id: Any = None
    title: str | None = None
    url: str | None = None
    index: int | None = None
    tech_stack: dict[str, Any] | None = None
    stealth: bool = False

    @classmethod
    def from_info(cls, info: dict[str, Any], base: AttachedTab | None = None) -> AttachedTab:
        """Merge a tab-info payload over ``base``; the tab id may change across navigations."""
        tab = cls() if base is None else cls(**asdict(base))
        tab.id = info.get("id", tab.id)
        tab.title = info.get("title", tab.title)
        tab.url = info.get("url", tab.url)
        if info.get("index") is not None:
            try:
                tab.index = int(info["index"])
            except (TypeError, ValueError):
                pass
        tech = info.get("techStack")
        tab.tech_stack = tech if isinstance(tech, dict) else None
        if "stealth" in info:
            tab.stealth = bool(info.get("stealth"))
        return tab

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "index": self.index,
            "tech_stack": self.tech_stack,
            **({"stealth": True} if self.stealth else {}),
        }


@dataclass(slots=True)
class ConnectionState:
    state: State
    client_id: str | None
    attached_tab: AttachedTab | None
    is_authenticated: bool
    connected_browser_name: str | None
    browser_disconnected: bool
    mode: Literal["free", "pro"]
    available_browsers: list[dict[str, Any]] | None = None
    port: int | None = None
    last_interrupt: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "mode": self.mode,
            "client_id": self.client_id,
            "browser": self.connected_browser_name,
            "is_authenticated": self.is_authenticated,
            "browser_disconnected": self.browser_disconnected,
            "attached_tab": self.attached_tab.to_dict() if self.attached_tab else None,
            **({"available_browsers": self.available_browsers} if self.available_browsers else {}),
            **({"port": self.port} if self.port else {}),
            **({"last_interrupt": self.last_interrupt} if self.last_interrupt else {}),
        }


def _short_url(url: str, limit: int = 50) -> str:
    return url if len(url) <= limit else url[: limit - 3] + "..."


def _format_build_time(raw: str | None) -> str | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).strftime("%H:%M:%S")
    except ValueError:
        return raw


def _tech_summary(tech: dict[str, Any]) -> list[str]:
    parts: list[str] = []
    names = [", ".join(str(x) for x in tech.get(k) or []) for k in ("frameworks", "libraries", "css")]
    names = [n for n in names if n]
    if names:
        parts.append("🔧 " + " + ".join(names))
    if tech.get("obfuscatedCSS"):
        parts.append("⚠️ Obfuscated CSS")
    return parts


class ConnectionStateMachine:
    _live: ClassVar[ConnectionStateMachine | None] = None

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        credentials: CredentialStore | None = None,
        server_factory: ServerFactory | None = None,
        remote_factory: RemoteFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if ConnectionStateMachine._live is not None:
            raise StateConflict(
                "A connection state machine is already live in this process",
                state=ConnectionStateMachine._live.state,
                reason="duplicate_instance",
            )
        self.config = config or RelayConfig()
        self.credentials = credentials or CredentialStore(self.config.tokens_path)
        self._server_factory = server_factory or (lambda cfg: RelayServer(cfg))
        self._remote_factory = remote_factory or (lambda url, cfg: RemoteRelayConnection(url, config=cfg))
        self._sleep = sleep

        self._state: State = PASSIVE
        self._lock = asyncio.Lock()
        self._client_id: str | None = None
        self._mode: Literal["free", "pro"] = "free"
        self._user_info: UserInfo | None = None
        self._server: RelayServer | None = None
        self._remote: RemoteRelayConnection | None = None
        self._subscriptions: list[Subscription] = []
        self._attached_tab: AttachedTab | None = None
        self._connected_browser_name: str | None = None
        self._browser_disconnected = False
        self._last_browser_id: str | None = None
        self._available_browsers: list[dict[str, Any]] | None = None
        self._last_interrupt: dict[str, Any] | None = None
        self._closed = False

        ConnectionStateMachine._live = self

    # ─────────────────────────────────────────────────────────────────────────
    # Accessors
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> State:
        return self._state

    @property
    def attached_tab(self) -> AttachedTab | None:
        return self._attached_tab

    @property
    def relay_server(self) -> RelayServer | None:
        return self._server

    @property
    def remote(self) -> RemoteRelayConnection | None:
        return self._remote

    def _is_authenticated(self) -> bool:
        try:
            return self.credentials.is_authenticated()
        except Exception:  # noqa: BLE001
            return False

    def status(self) -> ConnectionState:
        return ConnectionState(
            state=self._state,
            client_id=self._client_id,
            attached_tab=self._attached_tab,
            is_authenticated=self._is_authenticated(),
            connected_browser_name=self._connected_browser_name,
            browser_disconnected=self._browser_disconnected,
            mode=self._mode,
            available_browsers=list(self._available_browsers) if self._available_browsers else None,
            port=self._server.port if self._server is not None else None,
            last_interrupt=self._last_interrupt,
        )

    def _build_timestamp(self) -> str | None:
        if self._server is not None:
            return self._server.build_timestamp
        if self._remote is not None:
            return self._remote.build_timestamp
        return None

    def status_header(self) -> str:
        mode = self._mode.upper() if self._state != PASSIVE else ("PRO" if self._is_authenticated() else "FREE")
        version = f"v{SERVER_INFO['version']}"

        if self._state == PASSIVE:
            return f"🔴 {mode} {version} | Disabled"
        if self._state == AUTHENTICATED_WAITING:
            return f"⏳ {mode} {version} | Waiting for browser selection"

        build = _format_build_time(self._build_timestamp()) if self.config.debug else None
        parts = [f"✅ {mode} {version}" + (f" [{build}]" if build else "")]

        if self._browser_disconnected:
            parts.append("⚠️ Browser Disconnected")
        elif self._connected_browser_name:
            parts.append(f"🌐 {self._connected_browser_name}")

        tab = self._attached_tab
        if not self._browser_disconnected:
            if tab is None:
                parts.append("⚠️ No tab attached")
            else:
                parts.append(f"📄 Tab {tab.index if tab.index is not None else '?'}: {_short_url(tab.url or 'about:blank')}")
                if tab.tech_stack:
                    parts.extend(_tech_summary(tab.tech_stack))
        if tab is not None and tab.stealth:
            parts.append("🕵️ Stealth")
        return " | ".join(parts)

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────────────

    def _guard_transition(self) -> None:
        if self._closed:
            raise StateConflict("State machine is closed", state=self._state, reason="closed")
        if self._lock.locked():
            raise StateConflict("Another state transition is in progress", state=self._state, reason="transition_in_progress")

    async def enable(self, client_id: str | None, *, force_local: bool = False) -> dict[str, Any]:
        if not isinstance(client_id, str) or not client_id.strip():
            raise StateConflict(
                "client_id is required (a stable name for this project, e.g. 'my-project')",
                state=self._state,
                reason="missing_client_id",
            )
        self._guard_transition()
        async with self._lock:
            if self._state != PASSIVE:
                return {"ok": True, "already_enabled": True, **self.status().to_dict()}

            self._client_id = client_id.strip()
            self._last_interrupt = None
            auth = None if force_local else self.credentials.require_valid()
            if auth is None:
                return await self._become_primary()

            token, info = auth
            if not info.connection_url:
                raise AuthInvalid(
                    "Authentication token is missing connection_url. Log out to continue in free mode, "
                    "or log in again for remote relay access.",
                )
            self._user_info = info
            return await self._connect_to_proxy(token, info)

    async def disable(self) -> dict[str, Any]:
        self._guard_transition()
        async with self._lock:
            if self._state == PASSIVE:
                return {"ok": True, "already_disabled": True, "state": PASSIVE}
            await self._teardown()
            _LOGGER.info("Disabled")
            return {"ok": True, "state": PASSIVE}

    async def close(self) -> None:
        """Release transports and the per-process slot."""
        if self._closed:
            return
        async with self._lock:
            await self._teardown()
            self._closed = True
        if ConnectionStateMachine._live is self:
            ConnectionStateMachine._live = None

    async def _become_primary(self) -> dict[str, Any]:
        server = self._server_factory(self.config)
        try:
            await server.start()
        except RelayError:
            await server.stop()
            raise
        except Exception as exc:  # noqa: BLE001
            await server.stop()
            raise TransportError(f"Failed to start relay server: {exc}") from exc

        await server.set_client_id(self._client_id)
        self._subscriptions = [
            server.events.subscribe("reconnect", self._on_local_reconnect),
            server.events.subscribe("tab_info_update", self._on_tab_info_update),
        ]
        self._server = server
        self._mode = "free"
        self._state = ACTIVE
        self._connected_browser_name = LOCAL_BROWSER_NAME
        _LOGGER.info("Local mode active on port %s", server.port)
        return {
            "ok": True,
            "state": self._state,
            "mode": self._mode,
            "browser": self._connected_browser_name,
            "client_id": self._client_id,
            "port": server.port,
            "session_id": server.session_id,
        }

    @contextlib.contextmanager
    def _invalidate_on_auth_failure(self) -> Iterator[None]:
        """Drop stored tokens when the relay rejects them, so they are never retried."""
        try:
            yield
        except (AuthExpired, AuthInvalid) as exc:
            _LOGGER.warning("Relay rejected credentials (%s); clearing stored tokens", exc.kind)
            self.credentials.clear()
            raise

    async def _open_remote(self, token: str, info: UserInfo) -> RemoteRelayConnection:
        conn = self._remote_factory(str(info.connection_url), self.config)
        try:
            with self._invalidate_on_auth_failure():
                await conn.connect()
                await conn.handshake(token, self._client_id)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def _list_with_retry(self, conn: RemoteRelayConnection) -> list[dict[str, Any]]:
        attempts = max(1, int(self.config.remote_list_attempts))
        delays = list(self.config.remote_retry_delays)
        for attempt in range(attempts):
            browsers = await conn.list_extensions()
            _LOGGER.debug("list_extensions attempt %d/%d: %d found", attempt + 1, attempts, len(browsers))
            if browsers:
                return browsers
            if attempt < attempts - 1:
                delay = delays[min(attempt, len(delays) - 1)] if delays else 0.0
                await self._sleep(delay)
        return []

    async def _connect_to_proxy(self, token: str, info: UserInfo) -> dict[str, Any]:
        conn = await self._open_remote(token, info)
        try:
            browsers = await self._list_with_retry(conn)
            if not browsers:
                raise NoCounterpart(
                    "No browser extensions are connected to the remote relay. Check that the extension is "
                    "installed, enabled and shows \"Connected\", then try again.",
                    details={"attempts": self.config.remote_list_attempts},
                )
            if len(browsers) == 1:
                await self._bind_remote(conn, browsers[0])
                return {
                    "ok": True,
                    "state": self._state,
                    "mode": "pro",
                    "browser": self._connected_browser_name,
                    "browser_id": browsers[0]["id"],
                    "client_id": self._client_id,
                    **({"email": info.email} if info.email else {}),
                }
        except BaseException:
            await conn.close()
            raise

        await conn.close()
        self._available_browsers = browsers
        self._mode = "pro"
        self._state = AUTHENTICATED_WAITING
        _LOGGER.info("%d browsers available; waiting for browser_connect", len(browsers))
        return {
            "ok": True,
            "state": self._state,
            "mode": "pro",
            "multiple_browsers": True,
            "browsers": browsers,
            "client_id": self._client_id,
            **({"email": info.email} if info.email else {}),
        }

    async def _bind_remote(self, conn: RemoteRelayConnection, browser: dict[str, Any]) -> None:
        await conn.connect_extension(str(browser["id"]))
        self._subscriptions = [
            conn.events.subscribe("close", self._on_remote_close),
            conn.events.subscribe("browser_disconnected", self._on_browser_disconnected),
            conn.events.subscribe("browser_reconnected", self._on_browser_reconnected),
            conn.events.subscribe("tab_info_update", self._on_tab_info_update),
        ]
        self._remote = conn
        self._mode = "pro"
        self._state = CONNECTED
        self._connected_browser_name = str(browser.get("name") or "Browser")
        self._last_browser_id = str(browser["id"])
        self._browser_disconnected = False
        self._available_browsers = None
        _LOGGER.info("Connected to browser %s through the remote relay", self._connected_browser_name)
        await conn.fetch_build_info()

    async def browser_list(self) -> list[dict[str, Any]]:
        if self._state not in {CONNECTED, AUTHENTICATED_WAITING}:
            raise StateConflict(
                "browser_list only works in pro mode after enable",
                state=self._state,
                reason="not_remote",
            )
        if self._remote is not None:
            with self._invalidate_on_auth_failure():
                browsers = await self._remote.list_extensions()
        else:
            auth = self.credentials.require_valid()
            if auth is None:
                raise AuthInvalid("Not logged in")
            conn = await self._open_remote(*auth)
            try:
                with self._invalidate_on_auth_failure():
                    browsers = await conn.list_extensions()
            finally:
                await conn.close()
        self._available_browsers = browsers
        return browsers

    async def browser_connect(self, browser_id: str | None) -> dict[str, Any]:
        if not isinstance(browser_id, str) or not browser_id.strip():
            raise StateConflict("browser_id is required", state=self._state, reason="missing_browser_id")
        if self._state not in {CONNECTED, AUTHENTICATED_WAITING}:
            raise StateConflict(
                "browser_connect only works in pro mode after enable",
                state=self._state,
                reason="not_remote",
            )
        self._guard_transition()
        async with self._lock:
            candidates = self._available_browsers
            if not candidates and self._remote is not None:
                with self._invalidate_on_auth_failure():
                    candidates = await self._remote.list_extensions()
            selected = next((b for b in candidates or [] if b.get("id") == browser_id), None)
            if selected is None:
                raise CounterpartNotFound(
                    f"Browser '{browser_id}' not found",
                    details={"available_browsers": list(candidates or [])},
                )

            auth = self.credentials.require_valid()
            if auth is None:
                raise AuthInvalid("Not logged in")
            token, info = auth
            conn = await self._open_remote(token, info)
            previous = self._remote
            previous_subs = self._subscriptions
            try:
                with self._invalidate_on_auth_failure():
                    await self._bind_remote(conn, selected)
            except BaseException:
                await conn.close()
                raise
            for sub in previous_subs:
                sub.cancel()
            if previous is not None:
                await previous.close()
            self._attached_tab = None
            return {
                "ok": True,
                "state": self._state,
                "browser": self._connected_browser_name,
                "browser_id": selected["id"],
            }

    async def _teardown(self) -> None:
        self._drop_subscriptions()
        remote = self._remote
        server = self._server
        self._remote = None
        self._server = None
        if remote is not None:
            await remote.close()
        if server is not None:
            await server.stop()
        self._reset_to_passive()

    def _reset_to_passive(self) -> None:
        self._state = PASSIVE
        self._mode = "free"
        self._attached_tab = None
        self._connected_browser_name = None
        self._browser_disconnected = False
        self._last_browser_id = None
        self._available_browsers = None
        self._user_info = None

    def _drop_subscriptions(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        if self._state == PASSIVE:
            raise StateConflict("Browser automation is not enabled. Call enable first.", state=PASSIVE, reason="not_enabled")
        if self._state == AUTHENTICATED_WAITING:
            raise BrowserNotSelected(list(self._available_browsers or []))
        transport = self._server or self._remote
        if transport is None:
            raise StateConflict("No transport held", state=self._state, reason="no_transport")
        with self._invalidate_on_auth_failure():
            return await transport.send_command(method, params, timeout=timeout)

    # ─────────────────────────────────────────────────────────────────────────
    # Auth
    # ─────────────────────────────────────────────────────────────────────────

    def auth_status(self) -> dict[str, Any]:
        info: UserInfo | None
        try:
            info = self.credentials.user_info()
        except Exception:  # noqa: BLE001
            info = None
        if info is None:
            return {"authenticated": False, "mode": "free"}
        expired = info.is_expired()
        return {
            "authenticated": not expired,
            "mode": "free" if expired else "pro",
            **({"expired": True} if expired else {}),
            **info.to_dict(),
        }

    def logout(self) -> dict[str, Any]:
        cleared = self.credentials.clear()
        return {"ok": True, "logged_out": cleared, "state": self._state}

    # ─────────────────────────────────────────────────────────────────────────
    # Event observers
    # ─────────────────────────────────────────────────────────────────────────

    def _on_tab_info_update(self, info: Any) -> None:
        # Advisory cache only; commands are never validated against it.
        if info is None:
            self._attached_tab = None
            _LOGGER.debug("attached tab cleared")
            return
        if isinstance(info, dict):
            self._attached_tab = AttachedTab.from_info(info, self._attached_tab)

    def _on_local_reconnect(self) -> None:
        # The server re-sends the client id to every newly accepted counterpart.
        _LOGGER.info("Extension reconnected; clearing attached tab")
        self._attached_tab = None

    def _on_remote_close(self, code: Any = None, reason: str = "") -> None:
        if self._state not in {CONNECTED, AUTHENTICATED_WAITING}:
            return
        _LOGGER.warning("Remote relay connection lost; back to passive")
        self._drop_subscriptions()
        self._remote = None
        self._reset_to_passive()
        self._last_interrupt = {"reason": "remote_transport_lost", "code": code, "detail": reason, "at": _now_ms()}

    def _on_browser_disconnected(self, params: dict[str, Any]) -> None:
        self._browser_disconnected = True
        self._last_browser_id = self._last_browser_id or str(params.get("id") or "") or None
        self._attached_tab = None

    async def _on_browser_reconnected(self, params: dict[str, Any]) -> None:
        conn = self._remote
        extension_id = self._last_browser_id or str(params.get("id") or "")
        if conn is None or not extension_id:
            return
        try:
            await conn.connect_extension(extension_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Failed to re-connect to extension %s: %s", extension_id, exc)
            return
        self._browser_disconnected = False
        if params.get("name"):
            self._connected_browser_name = str(params["name"])
        await conn.fetch_build_info()
