"""
session.py — Voice Relay · Session State Machine
================================================
One VoiceSession per client connection.

    IDLE ──start──▶ CONNECTING ──open ok──▶ ACTIVE ──end/stop/drop──▶ CLOSING ──▶ CLOSED
                        │                                                          ▲
                        └──────────── open failed / end while connecting ─────────┘

Serialization
-------------
Client frames (from the gateway) and upstream events (from the adapter's
receive task) are both posted to a per-session mailbox and applied by a
single worker task.  Nothing else writes session state, so a barge-in can
never interleave with a TurnComplete flush.

Opening the upstream runs in its own task and reports back through the
mailbox, so `end_session` is still handled while CONNECTING.

Turn buffering
--------------
Upstream audio fragments are held until TurnComplete and sent to the client
as one `audio_response`.  Inbound audio while a turn is in progress is a
barge-in: the buffer is dropped, `interrupted` goes out before the chunk is
forwarded, and later fragments still tagged with the interrupted upstream
turn are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from voice_relay.codec import OUTBOUND_SAMPLE_RATE, decode_audio, encode_audio, pcm_duration_ms, pcm_rms
from voice_relay.config import LiveSetup, SessionConfig
from voice_relay.errors import (
    CloseError,
    ConnectError,
    MalformedFrame,
    SendError,
    SendErrorKind,
    client_message,
)
from voice_relay.events import (
    AudioFragment,
    Interrupted,
    TextFragment,
    TurnComplete,
    UpstreamClosed,
    UpstreamError,
    UpstreamEvent,
    sanitized_message,
)
from voice_relay.upstream import UpstreamAdapter, UpstreamHandle

log = logging.getLogger("voice_relay.session")

SESSION_NOT_FOUND = "Session not found"
NOT_CONNECTED = "Upstream session not connected"
SHUTDOWN_TIMEOUT_SEC = 5.0


class SessionState(Enum):
    IDLE       = "idle"
    CONNECTING = "connecting"
    ACTIVE     = "active"
    CLOSING    = "closing"
    CLOSED     = "closed"


class ClientSink(Protocol):
    """Outbound half of the client transport, as seen by a session."""

    @property
    def reachable(self) -> bool: ...

    async def emit(self, event: str, **fields: Any) -> None: ...


Handler = Callable[..., Awaitable[None]]


class VoiceSession:
    def __init__(
        self,
        session_id: str,
        adapter: UpstreamAdapter,
        sink: ClientSink,
        setup: LiveSetup,
        config: Optional[SessionConfig] = None,
        on_closed: Optional[Callable[["VoiceSession"], None]] = None,
    ) -> None:
        self.id = session_id
        self.state = SessionState.IDLE
        self.created_at = time.monotonic()
        self.config = config or SessionConfig()

        self._adapter = adapter
        self._sink = sink
        self._setup = setup
        self._on_closed = on_closed

        self._handle: Optional[UpstreamHandle] = None
        self._open_task: Optional[asyncio.Task] = None

        # Turn buffer
        self.pending_fragments: list[bytes] = []
        self.pending_text: list[str] = []
        self.turn_in_progress = False
        self._turn = 0                 # upstream turn index of the last accepted fragment
        self._discard_through = -1     # fragments with turn <= this are stale

        self._send_failures = 0
        self._pending_input = 0        # queued audio_chunk / text_message frames
        self.dropped_input = 0

        self._mailbox: asyncio.Queue[tuple[Handler, tuple]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"VoiceSession(id={self.id}, state={self.state.value})"

    # -- lifecycle of the worker -------------------------------------------------

    def start(self) -> None:
        """Spawn the mailbox worker.  Must be called from a running loop."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"session_{self.id[:8]}")

    async def _run(self) -> None:
        while True:
            handler, args = await self._mailbox.get()
            try:
                await handler(*args)
            except Exception:
                log.exception("event=session_handler_error session=%s handler=%s", self.id, handler.__name__)
                await self._error("Failed to process message")
            finally:
                self._mailbox.task_done()

    async def settle(self) -> None:
        """Wait until every posted item (and a pending upstream open) has been applied."""
        while True:
            await self._mailbox.join()
            task = self._open_task
            if task is None:
                return
            await asyncio.wait({task})

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    async def shutdown(self, reason: str, timeout: float = SHUTDOWN_TIMEOUT_SEC) -> None:
        """Close the session (as if `end_session` arrived) and stop the worker."""
        if self.state is not SessionState.CLOSED:
            self.end_session(reason)
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("event=session_close_timeout session=%s state=%s", self.id, self.state.value)
                await self._stop_worker()
                await self._close(reason, force=True)
        await self._stop_worker()

    async def _stop_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    # -- inbound API (called by the gateway / adapter, never blocks) -------------

    def _post(self, handler: Handler, *args: Any) -> None:
        self._mailbox.put_nowait((handler, args))

    def _post_input(self, handler: Handler, *args: Any) -> None:
        # Client media is the only unbounded producer; control frames and
        # upstream events always get through.
        if self._pending_input >= self.config.max_pending_input:
            self.dropped_input += 1
            if self.dropped_input == 1 or self.dropped_input % 100 == 0:
                log.warning("event=input_dropped session=%s pending=%d dropped_total=%d",
                            self.id, self._pending_input, self.dropped_input)
            return
        self._pending_input += 1
        self._post(self._consume_input, handler, args)

    async def _consume_input(self, handler: Handler, args: tuple) -> None:
        self._pending_input -= 1
        await handler(*args)

    def start_session(self) -> None:
        self._post(self._on_start)

    def audio_chunk(self, audio: str) -> None:
        self._post_input(self._on_audio, audio)

    def text_message(self, text: str) -> None:
        self._post_input(self._on_text, text)

    def stop_recording(self) -> None:
        self._post(self._on_stop_recording)

    def end_session(self, reason: str = "client_ended") -> None:
        self._post(self._on_end, reason)

    def on_upstream_event(self, event: UpstreamEvent) -> None:
        """Adapter callback.  Runs on the adapter's receive task."""
        self._post(self._on_upstream, event)

    # -- diagnostics -------------------------------------------------------------

    def describe(self) -> dict:
        return {
            "id":                self.id[:8],
            "state":             self.state.value,
            "turnInProgress":    self.turn_in_progress,
            "bufferedFragments": len(self.pending_fragments),
            "droppedInput":      self.dropped_input,
            "uptimeSec":         round(time.monotonic() - self.created_at, 1),
        }

    # -- outbound helpers --------------------------------------------------------

    def _set_state(self, new_state: SessionState) -> None:
        prev = self.state
        self.state = new_state
        log.info("event=state_change session=%s from=%s to=%s", self.id, prev.value, new_state.value)

    async def _emit(self, event: str, **fields: Any) -> None:
        if not self._sink.reachable:
            log.debug("event=emit_skipped session=%s type=%s reason=client_gone", self.id, event)
            return
        await self._sink.emit(event, **fields)

    async def _error(self, message: str) -> None:
        await self._emit("error", message=message)

    async def _reject_closed(self, what: str) -> None:
        log.info("event=frame_rejected session=%s frame=%s reason=closed", self.id, what)
        await self._error(SESSION_NOT_FOUND)

    # -- client frame handlers ---------------------------------------------------

    async def _on_start(self) -> None:
        if self.state is SessionState.CLOSED:
            await self._reject_closed("start_session")
            return
        if self.state is not SessionState.IDLE:
            log.warning("event=duplicate_start session=%s state=%s", self.id, self.state.value)
            await self._error("Session already started")
            return
        self._set_state(SessionState.CONNECTING)
        self._open_task = asyncio.create_task(self._open_upstream(), name=f"open_{self.id[:8]}")

    async def _open_upstream(self) -> None:
        try:
            handle = await self._adapter.open(self._setup, self.on_upstream_event)
        except ConnectError as exc:
            log.warning("event=upstream_connect_failed session=%s error=%s", self.id, exc)
            self._post(self._on_open_failed, exc)
        except Exception as exc:
            log.error("event=upstream_connect_failed session=%s error=%s", self.id, exc, exc_info=True)
            self._post(self._on_open_failed, exc)
        else:
            self._post(self._on_open_succeeded, handle)

    async def _on_open_succeeded(self, handle: UpstreamHandle) -> None:
        self._open_task = None
        if self.state is not SessionState.CONNECTING:
            log.info("event=late_upstream_discarded session=%s handle=%s", self.id, handle.id)
            await self._close_handle(handle)
            return
        self._handle = handle
        self._set_state(SessionState.ACTIVE)
        await self._emit("session_started", sessionId=self.id)

    async def _on_open_failed(self, exc: Exception) -> None:
        self._open_task = None
        if self.state is not SessionState.CONNECTING:
            return
        await self._error(client_message(exc))
        self._release_buffers()
        self._finish_closed()

    async def _on_audio(self, audio: str) -> None:
        if self.state is SessionState.CLOSED:
            await self._reject_closed("audio_chunk")
            return
        if self.state is not SessionState.ACTIVE:
            await self._error(NOT_CONNECTED)
            return
        try:
            pcm = decode_audio(audio)
        except MalformedFrame as exc:
            log.warning("event=malformed_audio session=%s error=%s", self.id, exc)
            await self._error(client_message(exc))
            return
        if not pcm:
            return
        if self.turn_in_progress:
            await self._interrupt("barge_in")
        await self._forward(self._adapter.send_audio, pcm, "Failed to process audio")

    async def _on_text(self, text: str) -> None:
        if self.state is SessionState.CLOSED:
            await self._reject_closed("text_message")
            return
        if self.state is not SessionState.ACTIVE:
            await self._error(NOT_CONNECTED)
            return
        log.info("event=text_message session=%s chars=%d", self.id, len(text))
        await self._forward(self._adapter.send_text, text, "Failed to process text message")

    async def _on_stop_recording(self) -> None:
        if self.state is SessionState.CLOSED:
            await self._reject_closed("stop_recording")
            return
        # Advisory only: nothing is buffered on the inbound side.
        if self.state is not SessionState.ACTIVE or not self.config.signal_audio_stream_end:
            return
        try:
            await self._adapter.end_audio_stream(self._handle)
        except SendError as exc:
            log.debug("event=audio_stream_end_failed session=%s error=%s", self.id, exc)

    async def _on_end(self, reason: str) -> None:
        if self.state is SessionState.CLOSED:
            if reason == "client_ended":
                await self._reject_closed("end_session")
            return
        await self._close(reason)

    async def _forward(self, send: Callable[..., Awaitable[None]], payload: Any, failure: str) -> None:
        try:
            await send(self._handle, payload)
        except SendError as exc:
            log.warning("event=upstream_send_failed session=%s kind=%s error=%s", self.id, exc.kind.value, exc.detail)
            await self._error(failure if exc.kind is SendErrorKind.TRANSPORT else client_message(exc))
            if exc.kind is SendErrorKind.TRANSPORT:
                self._send_failures += 1
                if self._send_failures >= self.config.max_send_failures:
                    log.warning("event=upstream_dead session=%s failures=%d", self.id, self._send_failures)
                    await self._close("upstream_send_failed")
            return
        self._send_failures = 0

    # -- upstream event handlers -------------------------------------------------

    async def _on_upstream(self, event: UpstreamEvent) -> None:
        if self.state is not SessionState.ACTIVE:
            log.debug("event=upstream_event_dropped session=%s state=%s event=%r", self.id, self.state.value, event)
            return

        if isinstance(event, (AudioFragment, TextFragment)):
            if event.turn <= self._discard_through:
                log.debug("event=stale_fragment_dropped session=%s turn=%d", self.id, event.turn)
                return
            self._turn = event.turn
            self.turn_in_progress = True
            if isinstance(event, AudioFragment):
                self.pending_fragments.append(event.data)
                log.debug("event=fragment_buffered session=%s count=%d", self.id, len(self.pending_fragments))
            else:
                self.pending_text.append(event.text)
        elif isinstance(event, TurnComplete):
            await self._flush_turn(event)
        elif isinstance(event, Interrupted):
            if self.turn_in_progress:
                await self._interrupt("upstream")
            self._discard_through = max(self._discard_through, event.turn)
        elif isinstance(event, UpstreamError):
            log.warning("event=upstream_error session=%s kind=%s fatal=%s detail=%s",
                        self.id, event.kind.value, event.fatal, event.detail)
            await self._error(sanitized_message(event))
            if event.fatal:
                await self._close("upstream_error")
        elif isinstance(event, UpstreamClosed):
            log.info("event=upstream_closed session=%s reason=%s", self.id, event.reason)
            await self._close("upstream_closed")

    async def _flush_turn(self, event: TurnComplete) -> None:
        if self.pending_fragments:
            payload = b"".join(self.pending_fragments)
            log.info(
                "event=turn_flush session=%s fragments=%d bytes=%d audio_ms=%.0f rms=%.0f",
                self.id, len(self.pending_fragments), len(payload),
                pcm_duration_ms(len(payload), OUTBOUND_SAMPLE_RATE), pcm_rms(payload),
            )
            await self._emit("audio_response", audio=encode_audio(payload), sessionId=self.id)
        elif event.turn <= self._discard_through:
            log.debug("event=stale_turn_complete session=%s turn=%d", self.id, event.turn)
        if self.pending_text and self.config.forward_text:
            await self._emit("text_response", text="".join(self.pending_text), sessionId=self.id)
        self.pending_fragments.clear()
        self.pending_text.clear()
        self.turn_in_progress = False
        await self._emit("turn_complete", sessionId=self.id)

    async def _interrupt(self, source: str) -> None:
        log.info(
            "event=interrupted session=%s source=%s dropped_fragments=%d turn=%d",
            self.id, source, len(self.pending_fragments), self._turn,
        )
        self.pending_fragments.clear()
        self.pending_text.clear()
        self.turn_in_progress = False
        self._discard_through = max(self._discard_through, self._turn)
        await self._emit("interrupted", sessionId=self.id)

    # -- teardown ----------------------------------------------------------------

    async def _close(self, reason: str, force: bool = False) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self.state is SessionState.CLOSING and not force:
            return
        self._set_state(SessionState.CLOSING)

        open_task, self._open_task = self._open_task, None
        if open_task is not None and not open_task.done():
            open_task.cancel()
            try:
                await open_task
            except asyncio.CancelledError:
                pass

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._close_handle(handle)

        self._release_buffers()
        self._finish_closed()
        await self._emit("session_ended", reason=reason)

    async def _close_handle(self, handle: UpstreamHandle) -> None:
        try:
            await self._adapter.close(handle)
        except CloseError as exc:
            log.warning("event=upstream_close_failed session=%s error=%s", self.id, exc)

    def _release_buffers(self) -> None:
        self.pending_fragments.clear()
        self.pending_text.clear()
        self.turn_in_progress = False

    def _finish_closed(self) -> None:
        self._set_state(SessionState.CLOSED)
        self._closed.set()
        if self._on_closed is not None:
            self._on_closed(self)
