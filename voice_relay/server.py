"""
server.py — Voice Relay · FastAPI Front Door
============================================
Hosts the browser-facing WebSocket and a small read-only HTTP surface.

Endpoints
---------
  WS   /ws  (and /)        Client Transport Gateway — one VoiceSession per socket
  GET  /health             Liveness + session count
  GET  /api/sessions       Per-session coarse state
  POST /api/test-message   One-shot text query against the upstream (diagnostics)

Run
---
    voice-relay                                                 # console script
    uvicorn --factory voice_relay.server:create_app --port 8080 # or directly

Config comes from RelayConfig.from_env() (.env honoured).  On shutdown every
live session is closed so no upstream connection outlives the process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from voice_relay.config import RelayConfig
from voice_relay.errors import ConnectError, SendError, client_message
from voice_relay.gateway import ClientGateway
from voice_relay.registry import SessionRegistry
from voice_relay.upstream import GeminiLiveAdapter, UpstreamAdapter, query_text

log = logging.getLogger("voice_relay.server")

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("RELAY_DEBUG") else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class TestMessageRequest(BaseModel):
    message: Optional[str] = None


class SessionInfo(BaseModel):
    id: str
    state: str
    turnInProgress: bool
    bufferedFragments: int
    droppedInput: int
    uptimeSec: float


class SessionsResponse(BaseModel):
    activeSessions: int
    sessions: list[SessionInfo]


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[RelayConfig] = None,
    adapter: Optional[UpstreamAdapter] = None,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    config = config or RelayConfig.from_env()
    adapter = adapter or GeminiLiveAdapter(config.upstream)
    registry = registry or SessionRegistry(max_sessions=config.server.max_sessions)
    gateway = ClientGateway(registry, adapter, config)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info(
            "event=server_start model=%s max_sessions=%d api_key_configured=%s",
            config.upstream.model, config.server.max_sessions, bool(config.upstream.api_key),
        )
        if not config.upstream.api_key:
            log.warning("event=missing_api_key msg=GEMINI_API_KEY not set")
        yield
        log.info("event=server_shutdown closing %d active sessions", len(registry))
        await registry.close_all("server_shutdown")
        log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Relay",
        version="1.0.0",
        description="Browser ↔ Gemini Live voice session relay",
        lifespan=_lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.adapter = adapter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.server.client_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Endpoints --------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":         "ok",
            "timestamp":      datetime.now(timezone.utc).isoformat(),
            "activeSessions": len(registry),
            "maxSessions":    config.server.max_sessions,
            "model":          config.upstream.model,
        })

    @app.get("/api/sessions", response_model=SessionsResponse)
    async def list_sessions() -> SessionsResponse:
        """Snapshot of every registered session."""
        sessions = [SessionInfo(**s.describe()) for s in registry.snapshot()]
        return SessionsResponse(activeSessions=len(sessions), sessions=sessions)

    @app.post("/api/test-message")
    async def test_message(body: TestMessageRequest) -> JSONResponse:
        """Text-only round trip through a temporary upstream session."""
        if not body.message:
            raise HTTPException(status_code=400, detail="Message is required")

        setup = config.upstream.live_setup(modalities=["TEXT"])
        try:
            response = await asyncio.wait_for(
                query_text(adapter, setup, body.message),
                timeout=config.server.test_message_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            log.warning("event=test_message_timeout limit=%.1fs", config.server.test_message_timeout_sec)
            raise HTTPException(status_code=504, detail="Response timeout") from exc
        except (ConnectError, SendError) as exc:
            log.error("event=test_message_failed error=%s", exc)
            raise HTTPException(status_code=502, detail=client_message(exc)) from exc
        return JSONResponse({"response": response})

    @app.websocket("/ws")
    async def ws_session(ws: WebSocket) -> None:
        await gateway.serve(ws)

    @app.websocket("/")
    async def ws_root(ws: WebSocket) -> None:
        await gateway.serve(ws)

    return app


def main() -> None:
    setup_logging()
    config = RelayConfig.from_env()
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
