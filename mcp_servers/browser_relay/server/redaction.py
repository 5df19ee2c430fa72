"""Redaction utilities for logging and frame dumps.

Prefers safety over fidelity: credentials and relay URLs carrying tokens never
reach the log, and long text blobs are truncated.
"""

from __future__ import annotations

import json
import os
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "authorization",
    "cookie",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

# Exact keys only: "author" and friends are not secrets.
_SENSITIVE_EXACT = {"auth", "pwd", "pass"}

_URL_KEYS = {"url", "connection_url", "connectionurl"}


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _redacted_summary(value: Any) -> str:
    if value is None:
        return "<redacted>"
    if isinstance(value, str):
        return f"<redacted str len={len(value)}>"
    if isinstance(value, (list, tuple, set)):
        return f"<redacted list len={len(value)}>"
    if isinstance(value, dict):
        return f"<redacted dict keys={len(value)}>"
    return "<redacted>"


def _redact_pairs(raw: str) -> str | None:
    pairs = parse_qsl(raw, keep_blank_values=True)
    out = [(k, "<redacted>" if is_sensitive_key(k) and v else v) for k, v in pairs]
    if out == pairs:
        return None
    return urlencode(out, doseq=True)


def redact_url(url: str) -> str:
    """Drop userinfo and redact sensitive query values.

    A fragment that looks like a query string (OAuth implicit flow) is treated
    the same way. Unchanged URLs are returned as-is.
    """
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except Exception:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    fragment = parts.fragment
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    if query and (redacted := _redact_pairs(query)) is not None:
        query = redacted
        changed = True
    if fragment and "=" in fragment and (redacted := _redact_pairs(fragment)) is not None:
        fragment = redacted
        changed = True
    if not changed:
        return url
    try:
        return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))
    except Exception:
        return url


def _redact_any(value: Any, *, key: str | None) -> Any:
    if isinstance(value, dict):
        return {k: _redact_any(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_any(v, key=key) for v in value]
    lk = (key or "").lower()
    if isinstance(value, str) and lk in _URL_KEYS:
        return redact_url(value)
    if lk and is_sensitive_key(lk):
        return _redacted_summary(value)
    return value


def redact_tool_arguments(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Redact tool arguments for safe logging."""
    out = _redact_any(args, key=None)
    # Forwarded commands may carry page text typed into password fields and the like.
    if tool == "browser_command" and isinstance(out, dict) and isinstance(out.get("params"), dict):
        params = dict(out["params"])
        for k in ("text", "value"):
            if k in params:
                params[k] = _redacted_summary(params[k])
        out["params"] = params
    return out


def redact_payload(payload: Any) -> Any:
    """Redact relay envelopes (handshakes, results) before they are logged."""
    return _redact_any(payload, key=None)


def _dump_max_chars() -> int:
    raw = os.environ.get("MCP_DUMP_FRAMES_MAX_CHARS", "5000").strip()
    try:
        return max(0, int(raw))
    except ValueError:
        return 5000


def redact_text_content(text: str) -> str:
    """Redact sensitive fields inside JSON text payloads (best-effort)."""
    try:
        obj = json.loads(text)
    except Exception:
        return text
    try:
        return json.dumps(_redact_any(obj, key=None), ensure_ascii=False)
    except Exception:
        return text


def redact_jsonrpc_for_dump(payload: dict[str, Any], *, max_text_chars: int | None = None) -> dict[str, Any]:
    """Redact a JSON-RPC message for file dumps.

    Tool call arguments are redacted by tool name; text content is redacted and
    truncated to ``max_text_chars``.
    """
    max_text_chars = max_text_chars if max_text_chars is not None else _dump_max_chars()
    msg = dict(payload) if isinstance(payload, dict) else {}

    if msg.get("method") in {"tools/call", "call_tool"}:
        params = msg.get("params")
        if isinstance(params, dict):
            name = params.get("name")
            args = params.get("arguments") or params.get("args")
            if isinstance(name, str) and isinstance(args, dict):
                params = dict(params)
                params["arguments"] = redact_tool_arguments(name, args)
                params.pop("args", None)
                msg["params"] = params

    result = msg.get("result")
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        content = []
        for item in result["content"]:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                it = dict(item)
                it["text"] = redact_text_content(it["text"])
                if max_text_chars is not None and len(it["text"]) > max_text_chars:
                    it["text"] = it["text"][:max_text_chars] + f"… <truncated len={len(item['text'])}>"
                content.append(it)
            else:
                content.append(item)
        msg["result"] = {**result, "content": content}

    return msg


def redact_jsonrpc_for_log(payload: dict[str, Any]) -> dict[str, Any]:
    """Stricter redaction for logs (shorter + safer)."""
    return redact_jsonrpc_for_dump(payload, max_text_chars=512)
