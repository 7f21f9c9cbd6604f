"""
Tests for the client transport gateway: frame parsing and full WebSocket flows.
"""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from voice_relay.config import RelayConfig
from voice_relay.errors import ConnectError, ConnectKind, MalformedFrame
from voice_relay.events import AudioFragment, TurnComplete
from voice_relay.gateway import AudioChunk, EndSession, StartSession, TextMessage, parse_frame
from voice_relay.registry import SessionRegistry
from voice_relay.server import create_app

from conftest import FakeAdapter


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def scripted(kind, payload):
    """Reply to text with one complete audio turn; audio gets no reply."""
    if kind == "text":
        return [AudioFragment(b"\x01\x00", 0), AudioFragment(b"\x02\x00", 0), TurnComplete(0)]
    return []


@pytest.fixture
def registry():
    return SessionRegistry(max_sessions=4)


@pytest.fixture
def fake():
    return FakeAdapter(responder=scripted)


@pytest.fixture
def client(fake, registry):
    app = create_app(config=RelayConfig(), adapter=fake, registry=registry)
    with TestClient(app) as c:
        yield c


def open_session(ws) -> str:
    hello = ws.receive_json()
    assert hello["type"] == "connection_established"
    ws.send_json({"type": "start_session"})
    started = ws.receive_json()
    assert started == {"type": "session_started", "sessionId": hello["sessionId"]}
    return hello["sessionId"]


class TestParseFrame:
    def test_known_frames(self):
        assert isinstance(parse_frame('{"type": "start_session"}'), StartSession)
        assert isinstance(parse_frame(b'{"type": "end_session"}'), EndSession)
        chunk = parse_frame('{"type": "audio_chunk", "audio": "AAA="}')
        assert isinstance(chunk, AudioChunk) and chunk.audio == "AAA="
        assert parse_frame('{"type": "text_message", "text": "hi"}') == TextMessage(type="text_message", text="hi")

    def test_extra_fields_ignored(self):
        assert isinstance(parse_frame('{"type": "start_session", "sessionId": "abc"}'), StartSession)

    @pytest.mark.parametrize("raw, message", [
        ("{nope", "Invalid JSON frame"),
        ("[1, 2]", "Frame is missing 'type'"),
        ('{"type": 5}', "Frame is missing 'type'"),
        ('{"audio": "AAA="}', "Frame is missing 'type'"),
        ('{"type": "dance"}', "Unknown message type: dance"),
        ('{"type": "audio_chunk"}', "Invalid audio_chunk frame: audio"),
        ('{"type": "text_message", "text": ""}', "Invalid text_message frame: text"),
    ])
    def test_malformed(self, raw, message):
        with pytest.raises(MalformedFrame) as info:
            parse_frame(raw)
        assert info.value.detail == message


class TestConversation:
    def test_connection_established_carries_session_id(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection_established"
            assert hello["sessionId"] in registry

    def test_root_path_also_serves_sessions(self, client):
        with client.websocket_connect("/") as ws:
            open_session(ws)

    def test_text_turn_is_flushed_as_one_response(self, client, fake):
        with client.websocket_connect("/ws") as ws:
            sid = open_session(ws)
            ws.send_json({"type": "text_message", "text": "Tell me about the RV400"})

            assert ws.receive_json() == {"type": "audio_response", "audio": "AQACAA==", "sessionId": sid}
            assert ws.receive_json() == {"type": "turn_complete", "sessionId": sid}
        assert fake.sent_text == ["Tell me about the RV400"]

    def test_barge_in(self, client, fake):
        fake.responder = lambda kind, payload: [AudioFragment(b"\x01\x00", 0)] if kind == "text" else []
        with client.websocket_connect("/ws") as ws:
            sid = open_session(ws)
            ws.send_json({"type": "text_message", "text": "talk for a while"})
            assert wait_until(lambda: fake.sent_text)
            # let the buffered fragment land before the user speaks over it
            time.sleep(0.05)
            ws.send_json({"type": "audio_chunk", "audio": "AAA="})
            assert ws.receive_json() == {"type": "interrupted", "sessionId": sid}
        assert fake.sent_audio == [b"\x00\x00"]

    def test_malformed_frames_keep_the_session_alive(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON frame"}
            ws.send_json({"type": "dance"})
            assert ws.receive_json() == {"type": "error", "message": "Unknown message type: dance"}
            ws.send_json({"type": "start_session"})
            assert ws.receive_json()["type"] == "session_started"

    def test_audio_before_start_is_refused(self, client, fake):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "audio_chunk", "audio": "AAA="})
            assert ws.receive_json() == {"type": "error", "message": "Upstream session not connected"}
        assert fake.sent_audio == []

    def test_end_session_then_frames_are_rejected(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            sid = open_session(ws)
            ws.send_json({"type": "end_session"})
            assert ws.receive_json() == {"type": "session_ended", "reason": "client_ended"}
            assert sid not in registry
            ws.send_json({"type": "audio_chunk", "audio": "AAA="})
            assert ws.receive_json() == {"type": "error", "message": "Session not found"}

    def test_connect_failure_reports_sanitized_error(self, registry):
        fake = FakeAdapter(fail_with=ConnectError(ConnectKind.AUTH, "API key not valid: AIza..."))
        app = create_app(config=RelayConfig(), adapter=fake, registry=registry)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                ws.send_json({"type": "start_session"})
                assert ws.receive_json() == {"type": "error", "message": "Upstream authentication failed"}
                ws.send_json({"type": "start_session"})
                assert ws.receive_json() == {"type": "error", "message": "Session not found"}
        assert len(registry) == 0


class TestTeardown:
    def test_abrupt_disconnect_releases_everything(self, client, fake, registry):
        with client.websocket_connect("/ws") as ws:
            open_session(ws)
            assert len(registry) == 1
            assert len(fake.open_handles) == 1

        assert wait_until(lambda: len(registry) == 0)
        assert wait_until(lambda: fake.open_handles == [])

    def test_capacity_limit(self, fake):
        registry = SessionRegistry(max_sessions=1)
        app = create_app(config=RelayConfig(), adapter=fake, registry=registry)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as first:
                first.receive_json()
                with client.websocket_connect("/ws") as second:
                    assert second.receive_json() == {
                        "type": "error",
                        "message": "Server is at capacity, try again later",
                    }
                    with pytest.raises(WebSocketDisconnect) as info:
                        second.receive_json()
                    assert info.value.code == 1013
                assert len(registry) == 1
