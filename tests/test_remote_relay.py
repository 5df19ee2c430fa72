from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fake_relay import FakeRemoteRelay, free_port

from mcp_servers.browser_relay.config import RelayConfig
from mcp_servers.browser_relay.errors import AuthExpired, AuthInvalid, CommandError, TransportError
from mcp_servers.browser_relay.remote_relay import RemoteRelayConnection

_CFG = RelayConfig(keepalive_interval=0, request_timeout=5.0)


async def _wait_for(pred: Any, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def test_handshake_list_connect_and_forward() -> None:
    async def _main() -> None:
        relay = FakeRemoteRelay(
            [
                {"id": "ext-1", "name": "Work Chrome", "version": "1.2.0", "extra": "dropped"},
                {"id": "", "name": "no id, skipped"},
                {"id": "ext-2"},
            ]
        )
        await relay.start()
        conn = RemoteRelayConnection(relay.url, config=_CFG)
        try:
            await conn.connect()
            await conn.handshake("tok-123", "proj-a")
            assert relay.handshakes == [{"access_token": "tok-123", "client_id": "proj-a"}]

            browsers = await conn.list_extensions()
            assert browsers == [
                {"id": "ext-1", "name": "Work Chrome", "version": "1.2.0"},
                {"id": "ext-2", "name": "Browser"},
            ]

            assert await conn.connect_extension("ext-1") == "conn-ext-1"
            assert conn.extension_id == "ext-1"
            assert await conn.fetch_build_info() == "2026-01-02T03:04:05Z"

            res = await conn.send_command("navigate", {"url": "https://example.com"})
            assert res == {"method": "navigate", "params": {"url": "https://example.com"}}
            assert relay.commands == [("navigate", {"url": "https://example.com"})]

            with pytest.raises(CommandError):
                await conn.connect_extension("ext-missing")
        finally:
            await conn.close()
            await relay.stop()

    asyncio.run(_main())


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ({"message": "Token expired"}, AuthExpired),
        ({"code": 401, "message": "Unauthorized"}, AuthInvalid),
        ({"message": "invalid_token: signature mismatch"}, AuthInvalid),
        ({"message": "relay overloaded"}, CommandError),
    ],
)
def test_handshake_errors_map_to_auth_failures(error: dict[str, Any], expected: type[Exception]) -> None:
    async def _main() -> None:
        relay = FakeRemoteRelay([], handshake_error=error)
        await relay.start()
        conn = RemoteRelayConnection(relay.url, config=_CFG)
        try:
            await conn.connect()
            with pytest.raises(expected) as ei:
                await conn.handshake("tok")
            assert type(ei.value) is expected
        finally:
            await conn.close()
            await relay.stop()

    asyncio.run(_main())


def test_browser_notifications_become_events() -> None:
    async def _main() -> None:
        relay = FakeRemoteRelay([{"id": "ext-1"}])
        await relay.start()
        conn = RemoteRelayConnection(relay.url, config=_CFG)
        seen: list[tuple[str, Any]] = []
        conn.events.subscribe("browser_disconnected", lambda p: seen.append(("down", p)))
        conn.events.subscribe("browser_reconnected", lambda p: seen.append(("up", p)))
        conn.events.subscribe("tab_info_update", lambda t: seen.append(("tab", t)))
        try:
            await conn.connect()
            await relay.wait_for_connections(1)
            await relay.notify("browser_disconnected", {"id": "ext-1"})
            await relay.notify("browser_reconnected", {"id": "ext-1", "name": "Work Chrome"})
            await relay.notify("notifications/tab_info_update", {"currentTab": {"id": 3, "url": "https://a.test"}})
            await _wait_for(lambda: len(seen) == 3)
            assert seen == [
                ("down", {"id": "ext-1"}),
                ("up", {"id": "ext-1", "name": "Work Chrome"}),
                ("tab", {"id": 3, "url": "https://a.test"}),
            ]
        finally:
            await conn.close()
            await relay.stop()

    asyncio.run(_main())


def test_transport_loss_emits_close_but_intentional_close_does_not() -> None:
    async def _main() -> None:
        relay = FakeRemoteRelay([{"id": "ext-1"}])
        await relay.start()
        closes: list[tuple[Any, str]] = []
        conn = RemoteRelayConnection(relay.url, config=_CFG)
        conn.events.subscribe("close", lambda code, reason: closes.append((code, reason)))
        try:
            await conn.connect()
            await relay.wait_for_connections(1)
            await relay.drop_all(1011, "relay restarting")
            await _wait_for(lambda: bool(closes))
            assert closes == [(1011, "relay restarting")]
            assert not conn.is_connected()

            closes.clear()
            await conn.connect()
            await conn.close()
            await asyncio.sleep(0.1)
            assert closes == []
        finally:
            await conn.close()
            await relay.stop()

    asyncio.run(_main())


def test_unreachable_relay_is_transport_error() -> None:
    async def _main() -> None:
        conn = RemoteRelayConnection(f"ws://127.0.0.1:{free_port()}/relay", config=_CFG, open_timeout=1.0)
        with pytest.raises(TransportError):
            await conn.connect()
        assert not conn.is_connected()

    asyncio.run(_main())
