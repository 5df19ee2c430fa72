"""JSON-RPC envelope shared by the relay server, its counterparts and the remote relay."""

from __future__ import annotations

import json
from typing import Any

SERVER_KIND = "multi-browser-mcp"

FRAME_RESPONSE = "response"
FRAME_REQUEST = "request"
FRAME_HANDSHAKE = "handshake"
FRAME_NOTIFICATION = "notification"
FRAME_INVALID = "invalid"

TAB_INFO_NOTIFICATION = "notifications/tab_info_update"


def make_request(req_id: Any, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params if isinstance(params, dict) else {}}


def make_result(req_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"message": str(message or "unknown error")}}


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": params if isinstance(params, dict) else {}}


def make_handshake(
    name: str,
    version: str,
    *,
    browser: str | None = None,
    build_timestamp: str | None = None,
) -> dict[str, Any]:
    return {
        "type": "handshake",
        "name": name,
        "version": version,
        **({"browser": browser} if browser else {}),
        **({"buildTimestamp": build_timestamp} if build_timestamp else {}),
    }


def discovery_document(session_id: str, port: int, *, connected: bool) -> dict[str, Any]:
    return {
        "type": SERVER_KIND,
        "sessionId": session_id,
        "port": int(port),
        "status": "connected" if connected else "waiting",
    }


def is_discovery_document(data: Any) -> bool:
    return isinstance(data, dict) and data.get("type") == SERVER_KIND


def classify(msg: Any) -> str:
    """Sort an inbound frame into one of the envelope kinds.

    A response has an id and no method; a request has both; a notification has
    a method and no id; a handshake is tagged with ``type``.
    """
    if not isinstance(msg, dict):
        return FRAME_INVALID
    has_id = msg.get("id") is not None
    method = msg.get("method")
    has_method = isinstance(method, str) and bool(method)
    if has_id and not has_method:
        return FRAME_RESPONSE
    if msg.get("type") == "handshake":
        return FRAME_HANDSHAKE
    if has_method and has_id:
        return FRAME_REQUEST
    if has_method:
        return FRAME_NOTIFICATION
    return FRAME_INVALID


def error_message(err: Any) -> str:
    if isinstance(err, dict) and isinstance(err.get("message"), str) and err.get("message"):
        return str(err["message"])
    try:
        return json.dumps(err, ensure_ascii=False)
    except Exception:
        return str(err)


def encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def decode(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    try:
        return json.loads(raw)
    except Exception:
        return None
