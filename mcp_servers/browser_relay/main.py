"""
MCP server bridging an automation client to a browser extension.

This module provides the main entry point and protocol handling. Tool dispatch
is handled via the registry in server/registry.py; connection lifecycle lives
in the state machine.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

from .config import RelayConfig
from .errors import RelayError
from .server.contract import (
    DEFAULT_PROTOCOL_VERSION,
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    initialize_result,
    select_protocol,
    tools_list,
)
from .server.redaction import redact_jsonrpc_for_dump, redact_jsonrpc_for_log, redact_tool_arguments
from .server.registry import create_default_registry
from .server.types import ToolResult
from .state_machine import ConnectionStateMachine

logger = logging.getLogger("mcp.browser_relay")

__all__ = [
    "SUPPORTED_PROTOCOL_VERSIONS",
    "LATEST_PROTOCOL_VERSION",
    "DEFAULT_PROTOCOL_VERSION",
    "McpServer",
    "configure_logging",
    "main",
]


def configure_logging(config: RelayConfig) -> None:
    """Logs go to stderr; stdout carries MCP frames."""
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    if config.log_file:
        os.makedirs(os.path.dirname(config.log_file) or ".", exist_ok=True)
        handler = logging.FileHandler(config.log_file, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger().addHandler(handler)
    # websockets logs every handshake failure (port probes included) at INFO.
    logging.getLogger("websockets").setLevel(logging.DEBUG if config.debug else logging.WARNING)


def _dump_frame(direction: bytes, payload: dict[str, Any], raw_line: bytes) -> None:
    dump_path = os.environ.get("MCP_DUMP_FRAMES")
    if not dump_path:
        return
    if dump_dir := os.path.dirname(dump_path):
        os.makedirs(dump_dir, exist_ok=True)
    with open(dump_path, "ab") as fp:
        fp.write(direction)
        if os.environ.get("MCP_DUMP_FRAMES_RAW") == "1":
            fp.write(raw_line.rstrip(b"\n") + b"\n")
        else:
            safe = redact_jsonrpc_for_dump(payload)
            fp.write((json.dumps(safe, ensure_ascii=False) + "\n").encode())


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    line = (json.dumps(payload, ensure_ascii=False) + "\n").encode()
    _dump_frame(b"--out--\n", payload, line)
    sys.stdout.buffer.write(line)
    sys.stdout.buffer.flush()


def _read_line() -> bytes | None:
    line = sys.stdin.buffer.readline()
    return line or None


def _parse_message(line: bytes) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line.decode())
    except ValueError:
        logger.warning("dropping malformed frame (%d bytes)", len(line))
        return None
    if not isinstance(msg, dict):
        return None
    if os.environ.get("MCP_TRACE"):
        logger.info("recv %s", redact_jsonrpc_for_log(msg))
    _dump_frame(b"--in--\n", msg, line)
    return msg


class McpServer:
    """MCP server with registry-based tool dispatch."""

    def __init__(self, config: RelayConfig | None = None, *, machine: ConnectionStateMachine | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.machine = machine or ConnectionStateMachine(self.config)
        self.registry = create_default_registry()
        self._tasks: set[asyncio.Task] = set()

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(protocol)})

    def handle_list_tools(self, request_id: Any) -> None:
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def _log_call(self, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s args=%s", name, redact_tool_arguments(name, arguments))

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        self._log_call(name, arguments)
        try:
            if not name:
                return ToolResult.error("Missing tool name")
            if not self.registry.has(name):
                return ToolResult.error(f"Unknown tool: {name}", tool=name, kind="unknown_tool")
            return await self.registry.dispatch(name, self.machine, arguments)
        except RelayError as e:
            logger.info("tool_error tool=%s kind=%s message=%s", name, e.kind, e.message)
            return ToolResult.from_relay_error(e, tool=name)
        except Exception as exc:
            logger.exception("tool_call_failed")
            return ToolResult.error(str(exc) or exc.__class__.__name__, tool=name)

    async def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        result = await self.call_tool(name, arguments)
        _write_message(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch an incoming JSON-RPC message. Tool calls run as tasks so they can overlap."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method in ("notifications/initialized", "notifications/cancelled"):
            return
        elif method in ("tools/list", "list_tools"):
            self.handle_list_tools(request_id)
        elif method in ("tools/call", "call_tool"):
            name = params.get("name")
            arguments = params.get("arguments") or params.get("args") or {}
            task = asyncio.create_task(self.handle_call_tool(request_id, name or "", arguments))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif method == "ping":
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is not None:
            _write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )

    async def serve(self) -> None:
        try:
            while True:
                line = await asyncio.to_thread(_read_line)
                if line is None:
                    break
                message = _parse_message(line)
                if message is not None:
                    self.dispatch(message)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            await self.machine.close()


def main() -> None:
    """Main entry point for the MCP server."""
    config = RelayConfig.from_env()
    configure_logging(config)
    try:
        asyncio.run(McpServer(config).serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
