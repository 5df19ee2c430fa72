from __future__ import annotations

import asyncio
import json
import socket
from collections.abc import Callable
from typing import Any

import pytest
from websockets.asyncio.client import connect

from mcp_servers.browser_relay.config import RelayConfig
from mcp_servers.browser_relay.errors import SessionNotFound
from mcp_servers.browser_relay.multi_session import MultiSessionManager
from mcp_servers.browser_relay.relay_server import RelayServer
from mcp_servers.browser_relay.session import BADGE_CONNECTED_COLOR, BADGE_DISCONNECTED_COLOR


def _free_port_block(n: int) -> int:
    for _ in range(50):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            base = int(s.getsockname()[1])
        if base + n > 65535:
            continue
        socks: list[socket.socket] = []
        ok = True
        try:
            for p in range(base, base + n):
                s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                socks.append(s)
                s.bind(("127.0.0.1", p))
        except OSError:
            ok = False
        finally:
            for s in socks:
                s.close()
        if ok:
            return base
    raise RuntimeError("no block of free ports")


async def _wait_for(pred: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class FakeBrowser:
    def __init__(self) -> None:
        self.tabs: list[dict[str, Any]] = [
            {"id": 11, "title": "Docs", "url": "https://docs.example.com", "active": True},
            {"id": 12, "title": "Shop", "url": "https://shop.example.com"},
            {"id": 13, "title": "Settings", "url": "about:preferences"},
        ]
        self.badges: list[tuple[int, str, str]] = []
        self.activated: list[int] = []
        self._next_id = 100

    async def create_tab(self, url: str, *, active: bool) -> dict[str, Any]:
        self._next_id += 1
        tab = {"id": self._next_id, "title": "", "url": url, "active": active}
        self.tabs.append(tab)
        return tab

    async def query_tabs(self) -> list[dict[str, Any]]:
        return list(self.tabs)

    async def get_tab(self, tab_id: int) -> dict[str, Any] | None:
        return next((t for t in self.tabs if t["id"] == tab_id), None)

    async def activate_tab(self, tab_id: int) -> None:
        self.activated.append(tab_id)

    async def set_badge(self, tab_id: int, text: str, color: str) -> None:
        self.badges.append((tab_id, text, color))


def _manager_config(base: int) -> RelayConfig:
    return RelayConfig(
        port=base,
        port_range=(base, base + 3),
        keepalive_interval=0,
        probe_timeout=0.5,
        reconnect_delay=60.0,
        scan_interval=60.0,
    )


def _server(port: int, session_id: str | None = None) -> RelayServer:
    return RelayServer(
        RelayConfig(port=port, auto_port=False, keepalive_interval=0, request_timeout=5.0),
        session_id=session_id,
    )


def test_scan_connects_to_every_server_with_isolated_tabs() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        a, b = _server(base, "aa01"), _server(base + 2, "bb02")
        await a.start()
        await b.start()
        browser = FakeBrowser()
        manager = MultiSessionManager(_manager_config(base), browser=browser)
        manager.install_tab_handlers()
        try:
            summary = await manager.scan_for_servers()
            assert summary == {"new": [base, base + 2], "dead": [], "total": 2}
            assert manager.session_count == 2
            assert manager.active_port in {base, base + 2}
            await _wait_for(lambda: a.is_connected() and b.is_connected())

            res_a = await a.send_command("selectTab", {"tabIndex": 0})
            res_b = await b.send_command("selectTab", {"tabIndex": 1, "activate": True})
            assert res_a["currentTab"]["id"] == 11
            assert res_b["currentTab"]["id"] == 12
            assert manager.get_session(base).attached_tab_id == 11
            assert manager.get_session(base + 2).attached_tab_id == 12
            assert browser.activated == [12]
            assert (11, "aa", BADGE_CONNECTED_COLOR) in browser.badges
            assert (12, "bb", BADGE_CONNECTED_COLOR) in browser.badges

            listing = await a.send_command("getTabs")
            tabs = listing["tabs"]
            assert [t["attachedToSession"] for t in tabs] == ["aa01", None, None]
            assert tabs[2]["automatable"] is False

            # A second scan with nothing changed is a no-op.
            assert await manager.scan_for_servers() == {"new": [], "dead": [], "total": 2}
        finally:
            await manager.stop()
            await a.stop()
            await b.stop()

    asyncio.run(_main())


def test_dead_server_is_dropped_and_active_session_promoted() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        a, b = _server(base, "aa01"), _server(base + 1, "bb02")
        await a.start()
        await b.start()
        browser = FakeBrowser()
        manager = MultiSessionManager(_manager_config(base), browser=browser)
        manager.install_tab_handlers()
        try:
            await manager.scan_for_servers()
            await _wait_for(lambda: a.is_connected() and b.is_connected())
            manager.set_active_session(base)
            await a.send_command("selectTab", {"tabIndex": 2})

            await a.stop()
            summary = await manager.scan_for_servers()
            assert summary["dead"] == [base]
            assert manager.get_session(base) is None
            assert manager.active_port == base + 1
            assert browser.badges[-1] == (13, "✕", BADGE_DISCONNECTED_COLOR)

            await b.stop()
            await manager.scan_for_servers()
            assert manager.active_port is None
            assert manager.get_active_session() is None
        finally:
            await manager.stop()

    asyncio.run(_main())


def test_session_id_change_on_same_port_replaces_session() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        first = _server(base, "aa01")
        await first.start()
        manager = MultiSessionManager(_manager_config(base), browser=FakeBrowser())
        second: RelayServer | None = None
        try:
            await manager.scan_for_servers()
            old = manager.get_session(base)
            assert old is not None and old.session_id == "aa01"
            old.attached_tab_id = 11

            await first.stop()
            second = _server(base, "cc03")
            await second.start()
            summary = await manager.scan_for_servers()
            assert summary == {"new": [base], "dead": [base], "total": 1}
            fresh = manager.get_session(base)
            assert fresh is not None and fresh is not old
            assert fresh.session_id == "cc03"
            assert fresh.attached_tab_id is None
        finally:
            await manager.stop()
            if second is not None:
                await second.stop()

    asyncio.run(_main())


def test_handler_registered_later_reaches_existing_sessions() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        server = _server(base)
        await server.start()
        manager = MultiSessionManager(_manager_config(base), browser=FakeBrowser())
        try:
            manager.register_command_handler("version", lambda params, session: "v1")
            await manager.scan_for_servers()
            await _wait_for(server.is_connected)
            assert await server.send_command("version") == "v1"

            async def _v2(params: dict[str, Any], session: Any) -> dict[str, Any]:
                return {"v": 2, "port": session.port}

            manager.register_command_handler("version", _v2)
            manager.register_command_handler("echo", lambda params, session: params)
            assert await server.send_command("version") == {"v": 2, "port": base}
            assert await server.send_command("echo", {"x": 1}) == {"x": 1}
        finally:
            await manager.stop()
            await server.stop()

    asyncio.run(_main())


def test_route_command_uses_session_port_or_active_session() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        a, b = _server(base), _server(base + 3)
        await a.start()
        await b.start()
        manager = MultiSessionManager(_manager_config(base), browser=FakeBrowser())
        try:
            with pytest.raises(SessionNotFound):
                manager.route_command("getTabs")

            await manager.scan_for_servers()
            manager.set_active_session(base)
            assert manager.route_command("getTabs").port == base

            params: dict[str, Any] = {"_sessionPort": base + 3, "url": "https://example.com"}
            assert manager.route_command("navigate", params).port == base + 3
            assert params == {"url": "https://example.com"}

            unset: dict[str, Any] = {"_sessionPort": None, "tabIndex": 1}
            assert manager.route_command("selectTab", unset).port == base
            assert unset == {"tabIndex": 1}

            with pytest.raises(SessionNotFound):
                manager.route_command("getTabs", {"_sessionPort": base + 1})
            with pytest.raises(SessionNotFound):
                manager.set_active_session(base + 1)

            status = manager.status_summary()
            assert status["totalSessions"] == 2
            assert status["activePort"] == base
            assert {s["status"] for s in status["sessions"]} == {"connected"}
        finally:
            await manager.stop()
            await a.stop()
            await b.stop()

    asyncio.run(_main())


def test_connect_to_server_is_idempotent_and_skips_non_relays() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        server = _server(base)
        await server.start()
        manager = MultiSessionManager(_manager_config(base), browser=FakeBrowser())
        try:
            assert await manager.connect_to_server(base + 1) is None
            first, again = await asyncio.gather(manager.connect_to_server(base), manager.connect_to_server(base))
            session = first or again
            assert session is not None
            assert manager.session_count == 1
            assert await manager.connect_to_server(base) is session
            assert manager.active_port == base
        finally:
            await manager.stop()
            await server.stop()

    asyncio.run(_main())


def test_session_taken_over_by_another_counterpart_is_dropped() -> None:
    async def _main() -> None:
        base = _free_port_block(4)
        server = _server(base, session_id="aa11")
        await server.start()
        manager = MultiSessionManager(_manager_config(base), browser=FakeBrowser())
        rival = None
        replacement = None
        try:
            await manager.scan_for_servers()
            session = manager.get_session(base)
            assert session is not None

            rival = await connect(f"ws://127.0.0.1:{base}/extension", ping_interval=None)
            await rival.send(json.dumps({"type": "handshake", "name": "rival", "version": "1.0.0"}))
            await _wait_for(lambda: session.status == "disconnected")
            assert not session.connection.auto_connect_enabled

            with pytest.raises(SessionNotFound):
                manager.route_command("getTabs", {"_sessionPort": base})

            summary = await manager.scan_for_servers()
            assert summary["dead"] == [base]
            assert manager.session_count == 0
            assert manager.active_port is None

            # Still owned by the rival: later scans leave it alone.
            assert (await manager.scan_for_servers())["new"] == []
            assert server.is_connected()

            await server.stop()
            replacement = _server(base, session_id="bb22")
            await replacement.start()
            summary = await manager.scan_for_servers()
            assert summary["new"] == [base]
            assert manager.get_session(base).session_id == "bb22"
        finally:
            if rival is not None:
                await rival.close()
            await manager.stop()
            await server.stop()
            if replacement is not None:
                await replacement.stop()

    asyncio.run(_main())
