from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed as WsConnectionClosed

from . import protocol
from .alarms import AlarmScheduler
from .config import RelayConfig
from .errors import TransportError
from .peer import JsonRpcPeer

_LOGGER = logging.getLogger("mcp.browser_relay.relay_client")

CLIENT_NAME = "browser-relay-extension"
CLIENT_VERSION = "1.0.0"

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_IDLE = "idle"
STATE_CLOSED = "closed"


def local_relay_url(port: int, host: str = "127.0.0.1") -> str:
    return f"ws://{host}:{int(port)}/extension"


class RelayClient(JsonRpcPeer):
    """Counterpart side of a relay connection.

    Connects to a relay server, introduces itself with a handshake and then
    answers the server's commands from registered handlers. While auto-connect
    is on, an unexpected close or failed attempt schedules a ``reconnect``
    alarm. After ``max_consecutive_failures`` failed attempts in a row the
    client goes idle until ``enable_auto_connect()`` is called again; ``None``
    retries forever.
    """

    not_connected_message = "Not connected to relay server."

    def __init__(
        self,
        url: str,
        *,
        config: RelayConfig | None = None,
        name: str = CLIENT_NAME,
        version: str = CLIENT_VERSION,
        browser: str = "chrome",
        build_timestamp: str | None = None,
        alarms: AlarmScheduler | None = None,
        open_timeout: float = 5.0,
    ) -> None:
        cfg = config or RelayConfig()
        super().__init__(request_timeout=cfg.request_timeout, keepalive_interval=cfg.keepalive_interval)
        self.url = url
        self.name = name
        self.version = version
        self.browser = browser
        self.build_timestamp = build_timestamp
        self.reconnect_delay = float(cfg.reconnect_delay)
        self.max_consecutive_failures = cfg.max_reconnect_failures
        self.open_timeout = float(open_timeout)

        self._owns_alarms = alarms is None
        self._alarms = alarms or AlarmScheduler()
        self._alarm_name = f"reconnect:{url}"
        self._state = STATE_DISCONNECTED
        self._auto_connect_enabled = False
        self._auto_connecting = False
        self._consecutive_failures = 0
        self._recv_task: asyncio.Task | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def auto_connect_enabled(self) -> bool:
        return self._auto_connect_enabled

    def status(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "state": self._state,
            "connected": self.is_connected(),
            "autoConnect": self._auto_connect_enabled,
            "consecutiveFailures": self._consecutive_failures,
            **({"maxConsecutiveFailures": self.max_consecutive_failures} if self.max_consecutive_failures else {}),
            **({"reconnectScheduled": True} if self._alarms.get(self._alarm_name) else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Connect / disconnect
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the socket and send the handshake. Raises TransportError on failure."""
        if self._ws is not None:
            return
        self._state = STATE_CONNECTING
        try:
            ws = await ws_connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=None,
                max_size=16_000_000,
            )
        except Exception as exc:  # noqa: BLE001
            self._state = STATE_DISCONNECTED
            raise TransportError(f"Connect failed: {self.url}: {exc}", details={"url": self.url}) from exc

        handshake = protocol.make_handshake(
            self.name,
            self.version,
            browser=self.browser,
            build_timestamp=self.build_timestamp,
        )
        try:
            await self._ws_send_json(ws, handshake)
        except Exception as exc:  # noqa: BLE001
            self._state = STATE_DISCONNECTED
            with contextlib.suppress(Exception):
                await ws.close()
            raise TransportError(f"Handshake failed: {self.url}: {exc}", details={"url": self.url}) from exc

        self._ws = ws
        self._state = STATE_CONNECTED
        self._consecutive_failures = 0
        self._alarms.clear(self._alarm_name)
        self._start_keepalive(ws)
        self._recv_task = asyncio.create_task(self._run(ws))
        _LOGGER.info("Connected to %s", self.url)
        self.events.emit("connect")

    async def disconnect(self) -> None:
        """Intentional close: turns auto-connect off and cancels any pending retry."""
        self._auto_connect_enabled = False
        self._alarms.clear(self._alarm_name)
        ws = self._ws
        self._ws = None
        self._stop_keepalive()
        self._state = STATE_CLOSED
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close(1000, "client disconnect")
        self._fail_pending("Disconnected")
        task = self._recv_task
        self._recv_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        if self._owns_alarms:
            await self._alarms.stop()

    # ─────────────────────────────────────────────────────────────────────────
    # Reconnection policy
    # ─────────────────────────────────────────────────────────────────────────

    def enable_auto_connect(self) -> None:
        """Turn auto-connect on (also leaves the idle state) and try right away."""
        self._auto_connect_enabled = True
        self._consecutive_failures = 0
        if self._state in {STATE_IDLE, STATE_CLOSED}:
            self._state = STATE_DISCONNECTED
        if self._owns_alarms:
            self._alarms.start()
        if self._ws is None:
            self._schedule_reconnect(0.0)

    def wake(self) -> int:
        return self._alarms.wake()

    async def auto_connect(self) -> bool:
        if self._auto_connecting:
            _LOGGER.debug("auto-connect already in progress")
            return False
        if self._ws is not None:
            return True
        if not self._auto_connect_enabled:
            return False

        self._auto_connecting = True
        try:
            await self.connect()
            return True
        except TransportError as exc:
            self._consecutive_failures += 1
            _LOGGER.info("Auto-connect failed (attempt #%d): %s", self._consecutive_failures, exc.message)
            cap = self.max_consecutive_failures
            if cap is not None and self._consecutive_failures >= cap:
                self._state = STATE_IDLE
                _LOGGER.warning("Giving up after %d failed attempts; waiting for enable_auto_connect()", cap)
                self.events.emit("idle")
                return False
            self._schedule_reconnect(self.reconnect_delay)
            return False
        finally:
            self._auto_connecting = False

    def _schedule_reconnect(self, delay: float) -> None:
        self._alarms.create(self._alarm_name, delay, self.auto_connect)

    # ─────────────────────────────────────────────────────────────────────────
    # Receive side
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(self, ws: Any) -> None:
        try:
            await self._receive_loop(ws)
        except WsConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("relay connection failed")
        finally:
            if self._ws is ws:
                self._ws = None
                self._stop_keepalive()
                self._fail_pending("Connection closed")
                self._state = STATE_DISCONNECTED
                reason = str(getattr(ws, "close_reason", "") or "")
                _LOGGER.info("Connection to %s closed%s", self.url, f" ({reason})" if reason else "")
                self.events.emit("disconnect")
                # Another counterpart took over this server; retrying would evict it in turn.
                if reason == "replaced":
                    self._auto_connect_enabled = False
                elif self._auto_connect_enabled:
                    self._schedule_reconnect(self.reconnect_delay)
