"""Shared pytest fixtures: a scripted upstream adapter and a recording client sink."""

from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from voice_relay.config import LiveSetup, SessionConfig
from voice_relay.errors import SendError, SendErrorKind
from voice_relay.events import UpstreamEvent
from voice_relay.session import VoiceSession
from voice_relay.upstream import UpstreamAdapter, UpstreamHandle

Responder = Callable[[str, Any], list]


class RecordingSink:
    """ClientSink that keeps every emitted frame."""

    def __init__(self, timeline: Optional[list] = None):
        self.frames: list[dict] = []
        self.reachable = True
        self.timeline = timeline if timeline is not None else []

    async def emit(self, event: str, **fields: Any) -> None:
        self.frames.append({"type": event, **fields})
        self.timeline.append(("client", event))

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]

    def of_type(self, event: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == event]


class FakeAdapter(UpstreamAdapter):
    """In-memory upstream.  Tests push events with push(); a responder can
    script replies to send_text / send_audio."""

    def __init__(
        self,
        fail_with: Optional[Exception] = None,
        responder: Optional[Responder] = None,
        timeline: Optional[list] = None,
    ):
        self.fail_with = fail_with
        self.responder = responder
        self.send_error: Optional[SendError] = None
        self.open_gate = None
        self.timeline = timeline if timeline is not None else []
        self.setups: list[LiveSetup] = []
        self.handles: list[UpstreamHandle] = []
        self.closed: list[UpstreamHandle] = []
        self.sent_audio: list[bytes] = []
        self.sent_text: list[str] = []
        self.stream_ends = 0
        self.on_event: Optional[Callable[[UpstreamEvent], None]] = None

    async def open(self, setup, on_event):
        self.setups.append(setup)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.on_event = on_event
        handle = UpstreamHandle(ws=None)
        self.handles.append(handle)
        return handle

    async def _check(self, handle):
        if self.send_error is not None:
            raise self.send_error
        if handle is None or not handle.is_open:
            raise SendError(SendErrorKind.NOT_CONNECTED)

    def _respond(self, kind: str, payload: Any) -> None:
        if self.responder is not None:
            self.push(*self.responder(kind, payload))

    async def send_audio(self, handle, pcm):
        await self._check(handle)
        self.sent_audio.append(pcm)
        self.timeline.append(("upstream", "audio"))
        self._respond("audio", pcm)

    async def send_text(self, handle, text):
        await self._check(handle)
        self.sent_text.append(text)
        self.timeline.append(("upstream", "text"))
        self._respond("text", text)

    async def end_audio_stream(self, handle):
        await self._check(handle)
        self.stream_ends += 1

    async def close(self, handle):
        if handle._closing:
            return
        handle._closing = True
        handle._open = False
        self.closed.append(handle)

    def push(self, *events: UpstreamEvent) -> None:
        for event in events:
            self.on_event(event)

    @property
    def open_handles(self) -> list[UpstreamHandle]:
        return [h for h in self.handles if h.is_open]


@pytest.fixture
def timeline():
    return []


@pytest.fixture
def adapter(timeline):
    return FakeAdapter(timeline=timeline)


@pytest.fixture
def sink(timeline):
    return RecordingSink(timeline=timeline)


@pytest.fixture
def setup():
    return LiveSetup(model="test-live-model", system_instruction="be brief")


@pytest.fixture
def closed_ids():
    return []


@pytest_asyncio.fixture
async def session(adapter, sink, setup, closed_ids):
    s = VoiceSession(
        "session-1",
        adapter=adapter,
        sink=sink,
        setup=setup,
        config=SessionConfig(),
        on_closed=lambda sess: closed_ids.append(sess.id),
    )
    s.start()
    yield s
    await s.shutdown("test_teardown")


@pytest_asyncio.fixture
async def active(session):
    """A session that has completed start_session."""
    session.start_session()
    await session.settle()
    return session
