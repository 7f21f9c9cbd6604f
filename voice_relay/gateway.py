"""
gateway.py — Voice Relay · Client Transport Gateway
===================================================
Terminates the browser WebSocket.  Per connection:

  1. accept, mint a session id, register a VoiceSession, send
     `connection_established`
  2. parse every inbound JSON frame (discriminated on `type`) and hand it to
     the session's mailbox — the receive loop never waits on upstream I/O
  3. on disconnect (clean or not) force the session closed and deregister it

Outbound session events are written as `{"type": <event>, ...fields}`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Annotated, Any, Literal, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from voice_relay.config import RelayConfig
from voice_relay.errors import MalformedFrame
from voice_relay.registry import SessionRegistry
from voice_relay.session import SESSION_NOT_FOUND, VoiceSession
from voice_relay.upstream import UpstreamAdapter

log = logging.getLogger("voice_relay.gateway")

TRY_AGAIN_LATER = 1013   # WebSocket close code


# ---------------------------------------------------------------------------
# Inbound frame models
# ---------------------------------------------------------------------------

class StartSession(BaseModel):
    type: Literal["start_session"]


class AudioChunk(BaseModel):
    type: Literal["audio_chunk"]
    audio: str


class TextMessage(BaseModel):
    type: Literal["text_message"]
    text: str = Field(min_length=1)


class StopRecording(BaseModel):
    type: Literal["stop_recording"]


class EndSession(BaseModel):
    type: Literal["end_session"]


InboundFrame = Annotated[
    Union[StartSession, AudioChunk, TextMessage, StopRecording, EndSession],
    Field(discriminator="type"),
]
_FRAME_ADAPTER: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)
FRAME_TYPES = frozenset({"start_session", "audio_chunk", "text_message", "stop_recording", "end_session"})


def parse_frame(raw: str | bytes) -> InboundFrame:
    """Decode one client frame.  Raises MalformedFrame with a client-safe detail."""
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedFrame("Invalid JSON frame") from exc
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedFrame("Frame is missing 'type'")
    frame_type = data["type"]
    if frame_type not in FRAME_TYPES:
        raise MalformedFrame(f"Unknown message type: {frame_type[:40]}")
    try:
        return _FRAME_ADAPTER.validate_python(data)
    except ValidationError as exc:
        fields = ",".join(sorted({str(err["loc"][-1]) for err in exc.errors()}))
        raise MalformedFrame(f"Invalid {frame_type} frame: {fields}") from exc


# ---------------------------------------------------------------------------
# Outbound sink
# ---------------------------------------------------------------------------

class WebSocketSink:
    """ClientSink over a Starlette WebSocket.  Never raises on a dead socket."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._reachable = True
        self._lock = asyncio.Lock()

    @property
    def reachable(self) -> bool:
        return self._reachable

    def mark_gone(self) -> None:
        self._reachable = False

    async def emit(self, event: str, **fields: Any) -> None:
        if not self._reachable:
            return
        frame = {"type": event, **fields}
        async with self._lock:
            try:
                await self._ws.send_text(json.dumps(frame))
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                self._reachable = False
                log.info("event=client_unreachable type=%s error=%s", event, exc)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ClientGateway:
    def __init__(self, registry: SessionRegistry, adapter: UpstreamAdapter, config: RelayConfig) -> None:
        self.registry = registry
        self.adapter = adapter
        self.config = config

    def _new_session(self, session_id: str, sink: WebSocketSink) -> VoiceSession:
        return VoiceSession(
            session_id,
            adapter=self.adapter,
            sink=sink,
            setup=self.config.upstream.live_setup(),
            config=self.config.session,
            on_closed=lambda s: self.registry.remove(s.id),
        )

    async def serve(self, ws: WebSocket) -> None:
        await ws.accept()
        sink = WebSocketSink(ws)

        if self.registry.full:
            log.warning("event=concurrency_limit_reached current=%d max=%s",
                        len(self.registry), self.registry.max_sessions)
            await sink.emit("error", message="Server is at capacity, try again later")
            await ws.close(code=TRY_AGAIN_LATER)
            return

        session_id = str(uuid.uuid4())
        session = self.registry.create(session_id, lambda sid: self._new_session(sid, sink))
        session.start()
        log.info("event=client_connected session=%s remote=%s", session_id, ws.client)
        await sink.emit("connection_established", sessionId=session_id)

        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    log.info("event=client_disconnected session=%s code=%s", session_id, message.get("code"))
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self._dispatch(session_id, sink, raw)
        except WebSocketDisconnect as exc:
            log.info("event=client_disconnected session=%s code=%s", session_id, exc.code)
        finally:
            sink.mark_gone()
            await session.shutdown("client_disconnected")
            self.registry.remove(session_id)

    async def _dispatch(self, session_id: str, sink: WebSocketSink, raw: str | bytes) -> None:
        try:
            frame = parse_frame(raw)
        except MalformedFrame as exc:
            log.info("event=malformed_frame session=%s detail=%s", session_id, exc.detail)
            await sink.emit("error", message=exc.detail)
            return

        session = self.registry.lookup(session_id)
        if session is None:
            await sink.emit("error", message=SESSION_NOT_FOUND)
            return

        if isinstance(frame, StartSession):
            session.start_session()
        elif isinstance(frame, AudioChunk):
            session.audio_chunk(frame.audio)
        elif isinstance(frame, TextMessage):
            session.text_message(frame.text)
        elif isinstance(frame, StopRecording):
            session.stop_recording()
        elif isinstance(frame, EndSession):
            session.end_session()
