from __future__ import annotations

import asyncio
import json
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from mcp_servers.browser_relay import main as mcp_server
from mcp_servers.browser_relay.config import RelayConfig


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


@pytest.fixture()
def sent(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    monkeypatch.setattr(mcp_server, "_write_message", lambda payload: out.append(payload))
    return out


@pytest.fixture()
def srv(tmp_path: Path) -> Iterator[mcp_server.McpServer]:
    cfg = RelayConfig(
        port=_free_port(),
        auto_port=False,
        keepalive_interval=0,
        tokens_path=str(tmp_path / "tokens.json"),
    )
    server = mcp_server.McpServer(cfg)
    try:
        yield server
    finally:
        asyncio.run(server.machine.close())


def _payload(result: Any) -> Any:
    text = result.content[0].text
    body = text.split("\n---\n", 1)[-1]
    return json.loads(body)


def test_server_initialize(srv: mcp_server.McpServer, sent: list[dict[str, Any]]) -> None:
    srv.handle_initialize(request_id="init")
    result = sent[0]["result"]
    assert result["serverInfo"]["name"] == "browser-relay"
    assert result["protocolVersion"] == mcp_server.LATEST_PROTOCOL_VERSION
    assert "tools" in result["capabilities"]
    assert "enable" in result["instructions"]


def test_initialize_respects_client_protocol(srv: mcp_server.McpServer, sent: list[dict[str, Any]]) -> None:
    srv.handle_initialize(request_id="init", params={"protocolVersion": "2024-11-05"})
    srv.handle_initialize(request_id="init2", params={"protocolVersion": "0.0.1"})
    assert sent[0]["result"]["protocolVersion"] == "2024-11-05"
    assert sent[1]["result"]["protocolVersion"] == mcp_server.LATEST_PROTOCOL_VERSION


def test_server_list_tools_output(srv: mcp_server.McpServer, sent: list[dict[str, Any]]) -> None:
    srv.handle_list_tools(request_id="1")
    names = {t["name"] for t in sent[0]["result"]["tools"]}
    assert names == {"enable", "disable", "status", "browser_list", "browser_connect", "auth", "browser_command"}
    assert set(srv.registry.names()) == names
    for tool in sent[0]["result"]["tools"]:
        assert tool["inputSchema"]["type"] == "object"


def test_server_unknown_method_error_and_ping(srv: mcp_server.McpServer, sent: list[dict[str, Any]]) -> None:
    srv.dispatch({"jsonrpc": "2.0", "id": 7, "method": "resources/list"})
    srv.dispatch({"jsonrpc": "2.0", "method": "notifications/initialized"})
    srv.dispatch({"jsonrpc": "2.0", "id": 8, "method": "ping"})
    assert sent[0]["error"]["code"] == -32601
    assert sent[1] == {"jsonrpc": "2.0", "id": 8, "result": {}}
    assert len(sent) == 2


def test_server_call_tool_status_while_passive(srv: mcp_server.McpServer) -> None:
    result = asyncio.run(srv.call_tool("status", {}))
    assert not result.is_error
    assert result.content[0].text.startswith("🔴 FREE")
    assert _payload(result)["state"] == "passive"


def test_server_call_tool_errors_are_typed(srv: mcp_server.McpServer) -> None:
    async def _main() -> None:
        passive = await srv.call_tool("browser_command", {"method": "getTabs"})
        assert passive.is_error
        assert passive.data["error"] == "state_conflict"
        assert passive.data["reason"] == "not_enabled"
        assert passive.data["tool"] == "browser_command"

        missing = await srv.call_tool("browser_command", {"params": {}})
        assert missing.data["error"] == "invalid_argument"

        bad_params = await srv.call_tool("browser_command", {"method": "x", "params": [1]})
        assert bad_params.data["error"] == "invalid_argument"

        unknown = await srv.call_tool("teleport", {})
        assert unknown.data["error"] == "unknown_tool"

        auth = await srv.call_tool("auth", {"action": "login"})
        assert auth.data["error"] == "invalid_argument"

        no_client = await srv.call_tool("enable", {})
        assert no_client.data["reason"] == "missing_client_id"

    asyncio.run(_main())


def test_server_call_tool_enable_then_disable(srv: mcp_server.McpServer) -> None:
    async def _main() -> None:
        enabled = await srv.call_tool("enable", {"client_id": "proj-a"})
        assert not enabled.is_error
        body = _payload(enabled)
        assert body["state"] == "active"
        assert body["port"] == srv.config.port
        assert enabled.content[0].text.startswith("✅ FREE")

        status = _payload(await srv.call_tool("status", {}))
        assert status["client_id"] == "proj-a"
        assert status["browser"] == "Local Browser"

        listing = await srv.call_tool("browser_list", {})
        assert listing.data["reason"] == "not_remote"

        not_connected = await srv.call_tool("browser_command", {"method": "getTabs", "timeout": 1})
        assert not_connected.data["error"] == "not_connected"

        disabled = await srv.call_tool("disable", {})
        assert _payload(disabled)["state"] == "passive"

    asyncio.run(_main())


def test_tools_call_is_answered_from_a_task(srv: mcp_server.McpServer, sent: list[dict[str, Any]]) -> None:
    async def _main() -> None:
        srv.dispatch(
            {"jsonrpc": "2.0", "id": "c1", "method": "tools/call", "params": {"name": "auth", "arguments": {}}}
        )
        assert sent == []
        await asyncio.gather(*list(srv._tasks))

    asyncio.run(_main())
    reply = sent[0]
    assert reply["id"] == "c1"
    assert reply["result"]["isError"] is False
    assert json.loads(reply["result"]["content"][0]["text"]) == {"authenticated": False, "mode": "free"}
