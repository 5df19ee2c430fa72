from __future__ import annotations

import contextlib
import errno
import json
import logging
import secrets
import time
from typing import Any

from websockets.asyncio.server import serve
from websockets.datastructures import Headers as WsHeaders
from websockets.exceptions import ConnectionClosed as WsConnectionClosed
from websockets.http11 import Response as WsResponse

from . import protocol
from .config import RelayConfig
from .errors import PortExhausted, PortInUse, TransportError
from .peer import JsonRpcPeer

_LOGGER = logging.getLogger("mcp.browser_relay.relay_server")

_BIND_RETRY_ERRNOS = {errno.EADDRINUSE, errno.EACCES}


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_session_id() -> str:
    """Short, readable id such as "a3f9"."""
    return secrets.token_hex(2)


class RelayServer(JsonRpcPeer):
    """Local WebSocket endpoint the browser extension connects to.

    - One listening port per instance; the discovery document is served on the
      same port to plain HTTP requests.
    - Exactly one current counterpart connection. A new inbound connection
      replaces the old one (extension reloads reconnect often).
    - Events: ``connect``, ``reconnect``, ``disconnect``, ``tab_info_update``,
      ``handshake``, ``notification``.
    """

    not_connected_message = 'Extension not connected. Please click the extension icon and click "Connect".'

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        port: int | None = None,
        host: str | None = None,
        auto_port: bool | None = None,
        session_id: str | None = None,
    ) -> None:
        cfg = config or RelayConfig()
        super().__init__(request_timeout=cfg.request_timeout, keepalive_interval=cfg.keepalive_interval)
        self.config = cfg
        self.host = (host or cfg.host or "127.0.0.1").strip() or "127.0.0.1"
        self._requested_port = int(port if port is not None else cfg.port)
        self.port = self._requested_port
        self.auto_port = cfg.auto_port if auto_port is None else bool(auto_port)
        self.session_id = session_id or generate_session_id()

        self._server: Any | None = None
        self._client_id: str | None = None
        self._browser_type = "chrome"
        self._counterpart_name: str | None = None
        self._counterpart_version: str | None = None
        self._build_timestamp: str | None = None
        self._connections_accepted = 0
        self._started_at_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Accessors
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def requested_port(self) -> int:
        return self._requested_port

    @property
    def browser_type(self) -> str:
        return self._browser_type

    @property
    def build_timestamp(self) -> str | None:
        return self._build_timestamp

    @property
    def client_id(self) -> str | None:
        return self._client_id

    def is_listening(self) -> bool:
        return self._server is not None

    def discovery(self) -> dict[str, Any]:
        return protocol.discovery_document(self.session_id, self.port, connected=self.is_connected())

    def status(self) -> dict[str, Any]:
        return {
            "listening": self.is_listening(),
            "host": self.host,
            "port": self.port,
            "requestedPort": self._requested_port,
            "sessionId": self.session_id,
            "connected": self.is_connected(),
            "pendingRequests": self.pending_count,
            "browser": self._browser_type,
            **({"clientId": self._client_id} if self._client_id else {}),
            **({"counterpartName": self._counterpart_name} if self._counterpart_name else {}),
            **({"buildTimestamp": self._build_timestamp} if self._build_timestamp else {}),
            **({"lastSeenMs": self._last_seen_ms} if self._last_seen_ms else {}),
            **({"startedAtMs": self._started_at_ms} if self._started_at_ms else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _port_candidates(self) -> list[int]:
        base = self._requested_port
        if not self.auto_port:
            return [base]
        cfg = RelayConfig(port=base, auto_port=True)
        return cfg.auto_port_candidates()

    async def start(self) -> int:
        """Bind and start serving. Returns the bound port."""
        if self._server is not None:
            return self.port

        candidates = self._port_candidates()
        last_error: str | None = None
        for port in candidates:
            try:
                server = await serve(
                    self._handler,
                    self.host,
                    int(port),
                    process_request=self._process_request,
                    ping_interval=None,
                    max_size=16_000_000,
                )
            except OSError as exc:
                last_error = str(exc)
                if getattr(exc, "errno", None) in _BIND_RETRY_ERRNOS:
                    _LOGGER.debug("port %s busy: %s", port, exc)
                    continue
                raise TransportError(f"Bind failed on {self.host}:{port}: {exc}", details={"port": port}) from exc

            self._server = server
            self.port = int(port)
            self._started_at_ms = _now_ms()
            if self.port != self._requested_port:
                _LOGGER.warning("Port %s was in use, using port %s instead", self._requested_port, self.port)
            _LOGGER.info("Session %s ready on %s:%s", self.session_id, self.host, self.port)
            return self.port

        _LOGGER.error("bind failed: %s", last_error or "no candidates")
        if not self.auto_port:
            raise PortInUse(self._requested_port)
        raise PortExhausted(candidates[0], candidates[-1])

    async def stop(self) -> None:
        ws = self._ws
        server = self._server
        self._server = None
        self._stop_keepalive()

        if ws is not None:
            self._ws = None
            with contextlib.suppress(Exception):
                await ws.close(1001, "server stopping")
        self._fail_pending("Relay server stopped")

        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
            _LOGGER.info("Session %s stopped (port %s)", self.session_id, self.port)

    async def __aenter__(self) -> RelayServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ─────────────────────────────────────────────────────────────────────────
    # Client identity
    # ─────────────────────────────────────────────────────────────────────────

    async def set_client_id(self, client_id: str | None) -> None:
        self._client_id = client_id
        if client_id and self.is_connected():
            await self.send_notification("authenticated", {"client_id": client_id})

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _process_request(self, _conn: Any, request: Any) -> WsResponse | None:
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:
            upgrade = ""
        if upgrade == "websocket":
            return None

        body = json.dumps(self.discovery(), separators=(",", ":")).encode("utf-8")
        headers = WsHeaders()
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        return WsResponse(200, "OK", headers, body)

    async def _handler(self, ws: Any) -> None:
        # Claim the slot before any await so the newest connection always wins.
        previous = self._ws
        self._ws = ws
        self._connections_accepted += 1
        self._last_seen_ms = _now_ms()
        self._start_keepalive(ws)
        if previous is not None:
            _LOGGER.info("Replacing existing extension connection (session %s)", self.session_id)
            self._fail_pending("Connection replaced")
            with contextlib.suppress(Exception):
                await previous.close(1000, "replaced")
            if self._ws is not ws:
                # Superseded while closing the previous connection.
                return
        _LOGGER.info("Extension connected (session %s)", self.session_id)

        if self._client_id:
            await self.send_notification("authenticated", {"client_id": self._client_id})

        self.events.emit("connect")
        if previous is not None:
            self.events.emit("reconnect")

        try:
            await self._receive_loop(ws)
        except WsConnectionClosed:
            pass
        except Exception:
            _LOGGER.exception("extension connection failed")
        finally:
            if self._ws is ws:
                self._ws = None
                self._stop_keepalive()
                failed = self._fail_pending("Extension disconnected")
                _LOGGER.info("Extension disconnected (session %s, failed %d pending)", self.session_id, failed)
                self.events.emit("disconnect")

    async def _on_handshake(self, ws: Any, msg: dict[str, Any]) -> None:
        self._browser_type = str(msg.get("browser") or "chrome")
        self._counterpart_name = str(msg.get("name") or "") or None
        self._counterpart_version = str(msg.get("version") or "") or None
        self._build_timestamp = str(msg.get("buildTimestamp") or "") or None
        _LOGGER.debug(
            "handshake browser=%s name=%s build=%s",
            self._browser_type,
            self._counterpart_name,
            self._build_timestamp,
        )
        with contextlib.suppress(Exception):
            await self._ws_send_json(
                ws,
                protocol.make_notification("session_info", {"sessionId": self.session_id, "port": self.port}),
            )
        self.events.emit("handshake", dict(msg))
