from __future__ import annotations

from mcp_servers.browser_relay import protocol


def test_classify_frames() -> None:
    assert protocol.classify({"jsonrpc": "2.0", "id": 1, "result": {}}) == protocol.FRAME_RESPONSE
    assert protocol.classify({"jsonrpc": "2.0", "id": 1, "error": {"message": "x"}}) == protocol.FRAME_RESPONSE
    assert protocol.classify({"jsonrpc": "2.0", "id": 7, "method": "getTabs"}) == protocol.FRAME_REQUEST
    assert protocol.classify({"jsonrpc": "2.0", "method": "session_info", "params": {}}) == protocol.FRAME_NOTIFICATION
    assert protocol.classify({"type": "handshake", "name": "ext", "version": "1"}) == protocol.FRAME_HANDSHAKE
    assert protocol.classify({"foo": "bar"}) == protocol.FRAME_INVALID
    assert protocol.classify(["not", "a", "dict"]) == protocol.FRAME_INVALID


def test_discovery_document_shape() -> None:
    doc = protocol.discovery_document("a3f9", 5556, connected=False)
    assert doc == {"type": "multi-browser-mcp", "sessionId": "a3f9", "port": 5556, "status": "waiting"}
    assert protocol.is_discovery_document(doc)
    assert protocol.discovery_document("a3f9", 5556, connected=True)["status"] == "connected"
    assert not protocol.is_discovery_document({"type": "something-else"})


def test_error_message_prefers_message_member() -> None:
    assert protocol.error_message({"message": "Tab not found"}) == "Tab not found"
    assert protocol.error_message({"code": 5}) == '{"code": 5}'


def test_handshake_omits_empty_optionals() -> None:
    hs = protocol.make_handshake("ext", "1.0.0")
    assert hs == {"type": "handshake", "name": "ext", "version": "1.0.0"}
    hs = protocol.make_handshake("ext", "1.0.0", browser="firefox", build_timestamp="2025-01-01T00:00:00Z")
    assert hs["browser"] == "firefox"
    assert hs["buildTimestamp"] == "2025-01-01T00:00:00Z"


def test_decode_tolerates_garbage() -> None:
    assert protocol.decode(b'{"id": 1}') == {"id": 1}
    assert protocol.decode("not json") is None
