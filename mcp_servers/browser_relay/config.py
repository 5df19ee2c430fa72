from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

DEFAULT_PORT = 5555
DEFAULT_PORT_RANGE = (5555, 5654)
# Auto-port probes at most this many ports above the requested one.
AUTO_PORT_SPAN = 99


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def parse_port_range(raw: str | None, *, default: tuple[int, int] = DEFAULT_PORT_RANGE) -> tuple[int, int]:
    """Parse "5555-5654" (inclusive). Bad input falls back to the default."""
    m = re.match(r"^\s*(\d+)\s*-\s*(\d+)\s*$", raw or "")
    if not m:
        return default
    lo = int(m.group(1))
    hi = int(m.group(2))
    if lo > hi:
        lo, hi = hi, lo
    lo = max(1, lo)
    hi = min(65535, hi)
    if lo > hi:
        return default
    return lo, hi


@dataclass(frozen=True, slots=True)
class RelayConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    port_range: tuple[int, int] = DEFAULT_PORT_RANGE
    auto_port: bool = True
    scan_interval: float = 5.0
    probe_timeout: float = 1.0
    keepalive_interval: float = 10.0
    request_timeout: float = 30.0
    reconnect_delay: float = 1.0
    # None means retry forever.
    max_reconnect_failures: int | None = None
    remote_list_attempts: int = 5
    remote_retry_delays: tuple[float, ...] = (2.0, 3.0, 4.0, 5.0)
    tokens_path: str = "~/.gemini/browser-relay/tokens.json"
    debug: bool = False
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> RelayConfig:
        max_failures_raw = (os.environ.get("MCP_RELAY_MAX_RECONNECT_FAILURES") or "").strip()
        max_failures: int | None = None
        if max_failures_raw:
            try:
                max_failures = max(1, int(max_failures_raw))
            except ValueError:
                max_failures = None
        log_file = (os.environ.get("MCP_RELAY_LOG_FILE") or "").strip()
        return cls(
            host=(os.environ.get("MCP_RELAY_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            port=_int_env("MCP_RELAY_PORT", default=DEFAULT_PORT, lo=1, hi=65535),
            port_range=parse_port_range(os.environ.get("MCP_RELAY_PORT_RANGE")),
            auto_port=_bool_env("MCP_RELAY_AUTO_PORT", default=True),
            scan_interval=_float_env("MCP_RELAY_SCAN_INTERVAL", default=5.0, lo=0.05, hi=300.0),
            probe_timeout=_float_env("MCP_RELAY_PROBE_TIMEOUT", default=1.0, lo=0.05, hi=10.0),
            keepalive_interval=_float_env("MCP_RELAY_KEEPALIVE_INTERVAL", default=10.0, lo=0.05, hi=600.0),
            request_timeout=_float_env("MCP_RELAY_REQUEST_TIMEOUT", default=30.0, lo=0.05, hi=600.0),
            reconnect_delay=_float_env("MCP_RELAY_RECONNECT_DELAY", default=1.0, lo=0.0, hi=60.0),
            max_reconnect_failures=max_failures,
            tokens_path=expand_path(os.environ.get("MCP_RELAY_TOKENS_PATH") or "~/.gemini/browser-relay/tokens.json"),
            debug=_bool_env("MCP_RELAY_DEBUG", default=False),
            log_file=expand_path(log_file) if log_file else None,
        )

    def auto_port_candidates(self) -> list[int]:
        """Ports tried by the relay server: the requested one, then the adjacent span."""
        base = int(self.port)
        if not self.auto_port:
            return [base]
        hi = min(65535, base + AUTO_PORT_SPAN)
        return list(range(base, hi + 1))

    def scan_ports(self) -> list[int]:
        lo, hi = self.port_range
        return list(range(lo, hi + 1))
