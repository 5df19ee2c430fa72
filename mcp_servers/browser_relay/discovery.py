from __future__ import annotations

import asyncio
import json
import logging
import urllib.request
from dataclasses import dataclass
from typing import Any

from . import protocol

_LOGGER = logging.getLogger("mcp.browser_relay.discovery")

# Probes are blocking urllib calls run in worker threads; this caps how many run at once.
DEFAULT_PROBE_CONCURRENCY = 32


@dataclass(frozen=True, slots=True)
class ServerInfo:
    host: str
    port: int
    session_id: str
    status: str

    @property
    def connected(self) -> bool:
        return self.status == "connected"


def _fetch_json(host: str, port: int, *, timeout: float) -> Any:
    url = f"http://{host}:{int(port)}/"
    req = urllib.request.Request(url, method="GET", headers={"Cache-Control": "no-store"})
    try:
        with urllib.request.urlopen(req, timeout=max(0.05, float(timeout))) as resp:  # noqa: S310
            if int(getattr(resp, "status", 200) or 200) != 200:
                return None
            raw = resp.read()
    except Exception:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except Exception:
        return None


def probe_port(host: str, port: int, *, timeout: float = 1.0) -> ServerInfo | None:
    """Blocking probe. Returns the server identity only for a relay discovery document."""
    data = _fetch_json(host, port, timeout=timeout)
    if not protocol.is_discovery_document(data):
        return None

    reported_port = port
    try:
        reported_port = int(data.get("port") or port)
    except Exception:
        reported_port = port

    return ServerInfo(
        host=str(host),
        port=int(reported_port),
        session_id=str(data.get("sessionId") or f"port-{port}"),
        status=str(data.get("status") or "waiting"),
    )


async def probe_port_async(host: str, port: int, *, timeout: float = 1.0) -> ServerInfo | None:
    return await asyncio.to_thread(probe_port, host, port, timeout=timeout)


async def scan_ports(
    ports: list[int],
    *,
    host: str = "127.0.0.1",
    timeout: float = 1.0,
    concurrency: int = DEFAULT_PROBE_CONCURRENCY,
) -> dict[int, ServerInfo]:
    """Probe every port concurrently. Keys are the probed ports."""
    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _one(port: int) -> tuple[int, ServerInfo | None]:
        async with sem:
            return port, await probe_port_async(host, port, timeout=timeout)

    results = await asyncio.gather(*(_one(p) for p in ports))
    found = {port: info for port, info in results if info is not None}
    _LOGGER.debug("scan %d ports: %d relay server(s)", len(ports), len(found))
    return found
