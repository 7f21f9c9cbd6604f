"""
upstream.py — Voice Relay · Upstream Session Adapter
====================================================
One logical connection to the Gemini Live (BidiGenerateContent) WebSocket
per voice session.

  open()        → connect, send `setup`, wait for `setupComplete`, start receiver
  send_audio()  → realtimeInput.audio   (PCM16 @ 16 kHz, base64)
  send_text()   → realtimeInput.text
  close()       → idempotent

Server pushes are translated by parse_server_message() into the normalized
events of events.py and handed to the `on_event` callback in arrival order.
The adapter is the only holder of the socket; callers get an opaque
UpstreamHandle.  No reconnect logic lives here — retry policy is the caller's.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from voice_relay.codec import INBOUND_SAMPLE_RATE, decode_audio, encode_audio, pcm_mime_type
from voice_relay.config import LiveSetup, UpstreamConfig
from voice_relay.errors import (
    CloseError,
    ConnectError,
    ConnectKind,
    MalformedFrame,
    SendError,
    SendErrorKind,
)
from voice_relay.events import (
    AudioFragment,
    Interrupted,
    TextFragment,
    TurnComplete,
    UpstreamClosed,
    UpstreamError,
    UpstreamErrorKind,
    UpstreamEvent,
)

log = logging.getLogger("voice_relay.upstream")

EventCallback = Callable[[UpstreamEvent], None]

# Close codes the Live API uses when it refuses a session after the handshake.
_POLICY_VIOLATION = 1008


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------

class UpstreamHandle:
    """Opaque token for one open upstream connection."""

    def __init__(self, ws: Any) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.turn = 0                  # upstream turn index, advanced on turn end
        self._ws = ws
        self._open = True
        self._closing = False
        self._receiver: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._open and not self._closing

    def __repr__(self) -> str:
        return f"UpstreamHandle(id={self.id}, open={self.is_open}, turn={self.turn})"


class UpstreamAdapter(ABC):
    """Contract the session state machine relies on."""

    @abstractmethod
    async def open(self, setup: LiveSetup, on_event: EventCallback) -> UpstreamHandle: ...

    @abstractmethod
    async def send_audio(self, handle: UpstreamHandle, pcm: bytes) -> None: ...

    @abstractmethod
    async def send_text(self, handle: UpstreamHandle, text: str) -> None: ...

    async def end_audio_stream(self, handle: UpstreamHandle) -> None:
        """Tell the upstream the mic went quiet.  Optional; default is a no-op."""

    @abstractmethod
    async def close(self, handle: UpstreamHandle) -> None: ...


# ---------------------------------------------------------------------------
# Wire protocol helpers (pure)
# ---------------------------------------------------------------------------

def build_setup_message(setup: LiveSetup) -> dict:
    """First client message of a Live session.  Values pass through verbatim."""
    model = setup.model if setup.model.startswith("models/") else f"models/{setup.model}"
    generation: dict[str, Any] = {"responseModalities": list(setup.response_modalities)}
    if setup.voice_name:
        generation["speechConfig"] = {
            "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": setup.voice_name}},
        }
    body: dict[str, Any] = {"model": model, "generationConfig": generation}
    if setup.system_instruction:
        body["systemInstruction"] = {"parts": [{"text": setup.system_instruction}]}
    return {"setup": body}


def parse_server_message(message: Any, turn: int) -> list[UpstreamEvent]:
    """Translate one decoded server message into normalized events.

    Every fragment is tagged with `turn`; the caller advances the counter
    after a TurnComplete or Interrupted.  Unknown top-level keys
    (setupComplete, usageMetadata, transcriptions …) yield nothing.
    """
    if not isinstance(message, dict):
        return [UpstreamError(UpstreamErrorKind.PROTOCOL, "non-object message")]

    events: list[UpstreamEvent] = []
    content = message.get("serverContent")
    if isinstance(content, dict):
        if content.get("interrupted"):
            events.append(Interrupted(turn))
        parts = (content.get("modelTurn") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or {}
            data = inline.get("data")
            if data and str(inline.get("mimeType", "audio/")).startswith("audio/"):
                try:
                    events.append(AudioFragment(decode_audio(data), turn))
                except MalformedFrame as exc:
                    events.append(UpstreamError(UpstreamErrorKind.PROTOCOL, str(exc)))
            elif part.get("text"):
                events.append(TextFragment(part["text"], turn))
        if content.get("turnComplete"):
            events.append(TurnComplete(turn))

    if "goAway" in message:
        time_left = (message.get("goAway") or {}).get("timeLeft", "?")
        events.append(UpstreamError(UpstreamErrorKind.GO_AWAY, f"time_left={time_left}"))
    if "error" in message:
        events.append(UpstreamError(UpstreamErrorKind.SERVER, json.dumps(message["error"])[:200]))
    return events


def _close_detail(exc: ConnectionClosed) -> tuple[Optional[int], str]:
    frame = exc.rcvd
    if frame is None:
        return None, "no close frame"
    return frame.code, frame.reason or ""


# ---------------------------------------------------------------------------
# Gemini Live adapter
# ---------------------------------------------------------------------------

class GeminiLiveAdapter(UpstreamAdapter):
    """Upstream adapter speaking the Gemini Live WebSocket protocol."""

    def __init__(
        self,
        config: UpstreamConfig,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.config = config
        self._connect = connect

    def _url(self) -> str:
        if not self.config.api_key:
            return self.config.url
        sep = "&" if "?" in self.config.url else "?"
        return f"{self.config.url}{sep}{urlencode({'key': self.config.api_key})}"

    # -- open ------------------------------------------------------------------

    async def open(self, setup: LiveSetup, on_event: EventCallback) -> UpstreamHandle:
        log.info("event=upstream_connecting model=%s modalities=%s", setup.model, setup.response_modalities)
        try:
            ws = await self._connect(
                self._url(),
                open_timeout=self.config.connect_timeout_sec,
                max_size=None,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            kind = ConnectKind.AUTH if status in (401, 403) else ConnectKind.REJECTED
            raise ConnectError(kind, f"http_status={status}") from exc
        except (InvalidHandshake, InvalidURI) as exc:
            raise ConnectError(ConnectKind.REJECTED, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise ConnectError(ConnectKind.TIMEOUT, "websocket open timed out") from exc
        except OSError as exc:
            raise ConnectError(ConnectKind.NETWORK, str(exc)) from exc

        # Until the handle exists nobody else can close `ws`, so every exit
        # path below (cancellation included) must discard it.
        try:
            await self._handshake(ws, setup)
        except BaseException:
            await self._discard(ws)
            raise

        handle = UpstreamHandle(ws)
        handle._receiver = asyncio.create_task(
            self._receive_loop(handle, on_event),
            name=f"upstream_recv_{handle.id}",
        )
        log.info("event=upstream_open handle=%s", handle.id)
        return handle

    async def _handshake(self, ws: Any, setup: LiveSetup) -> None:
        try:
            await ws.send(json.dumps(build_setup_message(setup)))
            raw = await asyncio.wait_for(ws.recv(), timeout=self.config.setup_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise ConnectError(ConnectKind.TIMEOUT, "no setupComplete") from exc
        except ConnectionClosed as exc:
            code, reason = _close_detail(exc)
            kind = ConnectKind.AUTH if code == _POLICY_VIOLATION else ConnectKind.REJECTED
            raise ConnectError(kind, f"code={code} reason={reason}") from exc
        except OSError as exc:
            raise ConnectError(ConnectKind.NETWORK, str(exc)) from exc

        try:
            ack = json.loads(raw)
        except ValueError:
            ack = None
        if not isinstance(ack, dict) or "setupComplete" not in ack:
            raise ConnectError(ConnectKind.REJECTED, "unexpected setup reply")

    async def _discard(self, ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException):
            log.debug("event=upstream_discard_failed", exc_info=True)
        log.info("event=upstream_discarded")

    # -- receive ---------------------------------------------------------------

    async def _receive_loop(self, handle: UpstreamHandle, on_event: EventCallback) -> None:
        reason = "remote_closed"
        try:
            async for raw in handle._ws:
                try:
                    message = json.loads(raw)
                except ValueError as exc:
                    log.warning("event=upstream_bad_json handle=%s error=%s", handle.id, exc)
                    on_event(UpstreamError(UpstreamErrorKind.PROTOCOL, str(exc)))
                    continue
                for event in parse_server_message(message, handle.turn):
                    if isinstance(event, (TurnComplete, Interrupted)):
                        handle.turn += 1
                    on_event(event)
        except ConnectionClosedError as exc:
            code, detail = _close_detail(exc)
            reason = f"abnormal_close code={code}"
            if not handle._closing:
                log.warning("event=upstream_dropped handle=%s code=%s reason=%s", handle.id, code, detail)
                on_event(UpstreamError(UpstreamErrorKind.CONNECTION, f"code={code} reason={detail}"))
        finally:
            handle._open = False
            if not handle._closing:
                log.info("event=upstream_closed handle=%s reason=%s", handle.id, reason)
                on_event(UpstreamClosed(reason))

    # -- send ------------------------------------------------------------------

    async def _send(self, handle: UpstreamHandle, payload: dict) -> None:
        if not handle.is_open:
            raise SendError(SendErrorKind.NOT_CONNECTED)
        try:
            await handle._ws.send(json.dumps(payload))
        except (ConnectionClosed, OSError) as exc:
            raise SendError(SendErrorKind.TRANSPORT, str(exc)) from exc

    async def send_audio(self, handle: UpstreamHandle, pcm: bytes) -> None:
        await self._send(handle, {
            "realtimeInput": {
                "audio": {"data": encode_audio(pcm), "mimeType": pcm_mime_type(INBOUND_SAMPLE_RATE)},
            },
        })

    async def send_text(self, handle: UpstreamHandle, text: str) -> None:
        await self._send(handle, {"realtimeInput": {"text": text}})

    async def end_audio_stream(self, handle: UpstreamHandle) -> None:
        await self._send(handle, {"realtimeInput": {"audioStreamEnd": True}})

    # -- close -----------------------------------------------------------------

    async def close(self, handle: UpstreamHandle) -> None:
        if handle._closing:
            return
        handle._closing = True
        handle._open = False
        try:
            await handle._ws.close()
        except (OSError, WebSocketException) as exc:
            raise CloseError(str(exc)) from exc
        finally:
            receiver = handle._receiver
            if receiver is not None and not receiver.done():
                receiver.cancel()
                try:
                    await receiver
                except asyncio.CancelledError:
                    pass
            log.info("event=upstream_close handle=%s", handle.id)


# ---------------------------------------------------------------------------
# One-shot text query (diagnostics)
# ---------------------------------------------------------------------------

async def query_text(adapter: UpstreamAdapter, setup: LiveSetup, message: str) -> str:
    """Open a throwaway session, send `message`, return the text of the first turn.

    The caller bounds the whole exchange with asyncio.wait_for(); the handle
    is closed on every exit path, including cancellation.
    """
    parts: list[str] = []
    done = asyncio.Event()
    failure: list[UpstreamEvent] = []

    def on_event(event: UpstreamEvent) -> None:
        if isinstance(event, TextFragment):
            parts.append(event.text)
        elif isinstance(event, TurnComplete):
            done.set()
        elif isinstance(event, UpstreamClosed) or (isinstance(event, UpstreamError) and event.fatal):
            failure.append(event)
            done.set()

    handle = await adapter.open(setup, on_event)
    try:
        await adapter.send_text(handle, message)
        await done.wait()
    finally:
        try:
            await adapter.close(handle)
        except CloseError as exc:
            log.warning("event=query_close_failed handle=%s error=%s", handle.id, exc)

    if failure and not parts:
        raise SendError(SendErrorKind.TRANSPORT, f"upstream ended before replying: {failure[0]!r}")
    return "".join(parts).strip()
