"""JSON-RPC endpoint logic shared by every relay connection.

The relay server, the counterpart-side client and the remote relay client all
speak the same envelope over one WebSocket at a time. This class owns the
pending-request table, handler tables, keepalive and frame dispatch; the
subclasses own how the socket is obtained and what happens around it.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from . import protocol
from .errors import CommandError, ConnectionClosed, NotConnected
from .events import EventEmitter
from .pending import PendingRequestTable
from .server.redaction import redact_payload

_LOGGER = logging.getLogger("mcp.browser_relay.peer")

CommandHandler = Callable[[dict[str, Any]], Any]
NotificationHandler = Callable[[dict[str, Any]], Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class JsonRpcPeer:
    not_connected_message = "Not connected."

    def __init__(self, *, request_timeout: float = 30.0, keepalive_interval: float | None = None) -> None:
        self.request_timeout = float(request_timeout)
        self.keepalive_interval = keepalive_interval
        self.events = EventEmitter()

        # NOTE: typed as Any to avoid coupling to a specific websockets connection class.
        self._ws: Any | None = None
        self._pending = PendingRequestTable()
        self._command_handlers: dict[str, CommandHandler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._keepalive_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._last_seen_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    def register_command_handler(self, method: str, handler: CommandHandler) -> None:
        self._command_handlers[method] = handler

    def register_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def has_command_handler(self, method: str) -> bool:
        return method in self._command_handlers

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send_command(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method is required")
        ws = self._ws
        if ws is None:
            raise NotConnected(self.not_connected_message)

        timeout_s = self.request_timeout if timeout is None else float(timeout)
        req_id, fut = self._pending.create(method)
        request = protocol.make_request(req_id, method, params)
        try:
            await self._ws_send_json(ws, request)
        except Exception as exc:  # noqa: BLE001
            self._pending.discard(req_id)
            raise ConnectionClosed(f"Send failed: {method}: {exc}") from exc
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("sent %s", redact_payload(request))
        return await self._pending.wait(req_id, fut, method=method, timeout=timeout_s)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await self._ws_send_json(ws, protocol.make_notification(method, params))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("notification dropped method=%s: %s", method, exc)
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            if self._ws is not ws:
                # Replaced or closed; its frames must not settle the shared table.
                break
            self._last_seen_ms = _now_ms()
            msg = protocol.decode(raw)
            if msg is None:
                continue
            try:
                await self._on_frame(ws, msg)
            except Exception:
                _LOGGER.exception("frame handling failed")

    async def _on_frame(self, ws: Any, msg: Any) -> None:
        kind = protocol.classify(msg)
        if kind == protocol.FRAME_RESPONSE:
            self._on_response(msg)
        elif kind == protocol.FRAME_HANDSHAKE:
            await self._on_handshake(ws, msg)
        elif kind == protocol.FRAME_NOTIFICATION:
            await self._on_notification(msg)
        elif kind == protocol.FRAME_REQUEST:
            task = asyncio.create_task(self._on_request(ws, msg))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)

    def _on_response(self, msg: dict[str, Any]) -> None:
        req_id = msg.get("id")
        if not self._pending.tracks(req_id):
            _LOGGER.debug("stale response dropped id=%s", req_id)
            return

        result = msg.get("result")
        # `null` is meaningful here: the attached tab went away.
        if isinstance(result, dict) and "currentTab" in result:
            self.events.emit("tab_info_update", result.get("currentTab"))

        err = msg.get("error")
        if err is not None:
            code = err.get("code") if isinstance(err, dict) else None
            self._pending.reject(
                req_id,
                CommandError(protocol.error_message(err), details={"code": code} if code is not None else None),
            )
        else:
            self._pending.resolve(req_id, result)

    async def _on_handshake(self, ws: Any, msg: dict[str, Any]) -> None:
        _ = (ws, msg)

    async def _on_notification(self, msg: dict[str, Any]) -> None:
        method = str(msg.get("method") or "")
        raw_params = msg.get("params")
        params = raw_params if isinstance(raw_params, dict) else {}

        if method == protocol.TAB_INFO_NOTIFICATION and "currentTab" in params:
            self.events.emit("tab_info_update", params.get("currentTab"))

        handler = self._notification_handlers.get(method)
        if handler is None:
            self.events.emit("notification", method, params)
            return
        res = handler(params)
        if inspect.isawaitable(res):
            await res
        self.events.emit("notification", method, params)

    async def _on_request(self, ws: Any, msg: dict[str, Any]) -> None:
        req_id = msg.get("id")
        method = str(msg.get("method") or "")
        raw_params = msg.get("params")
        params = raw_params if isinstance(raw_params, dict) else {}

        handler = self._command_handlers.get(method)
        if handler is None:
            reply = protocol.make_error(req_id, f"Unknown method: {method}")
        else:
            try:
                res = handler(params)
                if inspect.isawaitable(res):
                    res = await res
                reply = protocol.make_result(req_id, res)
            except Exception as exc:  # noqa: BLE001
                reply = protocol.make_error(req_id, str(exc) or exc.__class__.__name__)
        with contextlib.suppress(Exception):
            await self._ws_send_json(ws, reply)

    # ─────────────────────────────────────────────────────────────────────────
    # Keepalive + teardown
    # ─────────────────────────────────────────────────────────────────────────

    def _start_keepalive(self, ws: Any) -> None:
        self._stop_keepalive()
        interval = self.keepalive_interval
        if not interval or interval <= 0:
            return
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws, float(interval)))

    def _stop_keepalive(self) -> None:
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _keepalive_loop(self, ws: Any, interval: float) -> None:
        # A missing pong is not treated as a disconnect; only the close event is.
        while True:
            await asyncio.sleep(interval)
            if self._ws is not ws:
                return
            try:
                await ws.ping()
                _LOGGER.debug("keepalive ping sent")
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("keepalive ping failed: %s", exc)

    def _fail_pending(self, reason: str) -> int:
        return self._pending.fail_all(ConnectionClosed(reason))

    async def _ws_send_json(self, ws: Any, payload: dict[str, Any]) -> None:
        await ws.send(protocol.encode(payload))
