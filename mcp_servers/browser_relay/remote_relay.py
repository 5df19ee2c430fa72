from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed as WsConnectionClosed

from .config import RelayConfig
from .errors import AuthExpired, AuthInvalid, CommandError, TransportError
from .peer import JsonRpcPeer

_LOGGER = logging.getLogger("mcp.browser_relay.remote_relay")

BUILD_INFO_TIMEOUT = 5.0

_EXPIRED_MARKERS = ("expired",)
_INVALID_MARKERS = ("invalid_token", "invalid token", "unauthorized", "unauthenticated", "forbidden")


def _auth_error(exc: CommandError) -> CommandError | AuthExpired | AuthInvalid:
    code = str(exc.details.get("code") or "").lower()
    text = f"{code} {exc.message}".lower()
    if any(m in text for m in _EXPIRED_MARKERS):
        return AuthExpired(exc.message, details=exc.details)
    if code in {"401", "403"} or any(m in text for m in _INVALID_MARKERS):
        return AuthInvalid(exc.message, details=exc.details)
    return exc


class RemoteRelayConnection(JsonRpcPeer):
    """Client for the network relay used in authenticated mode.

    The relay multiplexes many counterparts; after ``mcp_handshake`` the
    client lists them and binds to one with ``connect``. Events: ``close``
    (transport lost, not emitted for ``close()``), ``browser_disconnected``,
    ``browser_reconnected``, ``tab_info_update``, ``notification``.
    """

    not_connected_message = "Not connected to remote relay."

    def __init__(self, url: str, *, config: RelayConfig | None = None, open_timeout: float = 10.0) -> None:
        cfg = config or RelayConfig()
        super().__init__(request_timeout=cfg.request_timeout, keepalive_interval=cfg.keepalive_interval)
        self.url = url
        self.open_timeout = float(open_timeout)
        self.connection_id: str | None = None
        self.extension_id: str | None = None
        self.build_timestamp: str | None = None
        self._closing = False
        self._recv_task: asyncio.Task | None = None

        self.register_notification_handler("browser_disconnected", self._on_browser_disconnected)
        self.register_notification_handler("browser_reconnected", self._on_browser_reconnected)

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._closing = False
        try:
            ws = await ws_connect(self.url, open_timeout=self.open_timeout, ping_interval=None, max_size=16_000_000)
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"Remote relay unreachable: {exc}", details={"url": self.url}) from exc
        self._ws = ws
        self._start_keepalive(ws)
        self._recv_task = asyncio.create_task(self._run(ws))
        _LOGGER.info("Connected to remote relay")

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None
        self._stop_keepalive()
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close(1000, "client closing")
        self._fail_pending("Remote relay connection closed")
        task = self._recv_task
        self._recv_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    async def send_command(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        try:
            return await super().send_command(method, params, timeout=timeout)
        except CommandError as exc:
            mapped = _auth_error(exc)
            if mapped is exc:
                raise
            raise mapped from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Relay protocol
    # ─────────────────────────────────────────────────────────────────────────

    async def handshake(self, access_token: str, client_id: str | None = None) -> Any:
        params: dict[str, Any] = {"access_token": access_token}
        if client_id:
            params["client_id"] = client_id
        return await self.send_command("mcp_handshake", params)

    async def list_extensions(self) -> list[dict[str, Any]]:
        result = await self.send_command("list_extensions", {})
        raw = result.get("extensions") if isinstance(result, dict) else None
        out: list[dict[str, Any]] = []
        for item in raw or []:
            if isinstance(item, dict) and item.get("id"):
                out.append(
                    {
                        "id": str(item["id"]),
                        "name": str(item.get("name") or "Browser"),
                        **({"version": item["version"]} if item.get("version") else {}),
                    }
                )
        return out

    async def connect_extension(self, extension_id: str) -> str | None:
        result = await self.send_command("connect", {"extension_id": extension_id})
        connection_id = result.get("connection_id") if isinstance(result, dict) else None
        self.connection_id = str(connection_id) if connection_id else None
        self.extension_id = extension_id
        return self.connection_id

    async def fetch_build_info(self) -> str | None:
        """Best effort; a slow or old counterpart just leaves the timestamp unset."""
        try:
            info = await self.send_command("get_build_info", {}, timeout=BUILD_INFO_TIMEOUT)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("get_build_info failed: %s", exc)
            return self.build_timestamp
        if isinstance(info, dict) and info.get("buildTimestamp"):
            self.build_timestamp = str(info["buildTimestamp"])
        return self.build_timestamp

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _on_browser_disconnected(self, params: dict[str, Any]) -> None:
        _LOGGER.warning("Browser disconnected from remote relay: %s", params.get("name") or params.get("id") or "")
        self.events.emit("browser_disconnected", params)

    def _on_browser_reconnected(self, params: dict[str, Any]) -> None:
        _LOGGER.info("Browser reconnected to remote relay: %s", params.get("name") or params.get("id") or "")
        self.events.emit("browser_reconnected", params)

    async def _run(self, ws: Any) -> None:
        try:
            await self._receive_loop(ws)
        except WsConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("remote relay connection failed")
        finally:
            if self._ws is ws:
                self._ws = None
                self._stop_keepalive()
                self._fail_pending("Remote relay connection lost")
                code = getattr(ws, "close_code", None)
                reason = str(getattr(ws, "close_reason", "") or "")
                _LOGGER.warning("Remote relay connection lost (code=%s reason=%s)", code, reason)
                if not self._closing:
                    self.events.emit("close", code, reason)
