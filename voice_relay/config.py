"""
config.py — Voice Relay · Runtime Configuration
===============================================
Pydantic models for every tunable parameter of the relay.
Optionally read from a JSON file (RELAY_CONFIG) and overridden from the
environment (.env supported).  Used by:
  • server.py    — builds the app, CORS origin, concurrency limit
  • session.py   — behaviour flags, LiveSetup handed to the adapter on start
  • upstream.py  — endpoint URL, API key, timeouts
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("voice_relay.config")

# ---------------------------------------------------------------------------
# Default system instruction
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_INSTRUCTION = """\
You are Rev, the official voice assistant for Revolt Motors, an Indian
electric motorcycle manufacturer.
- Only discuss Revolt Motors, electric motorcycles, sustainability and closely
  related automotive topics; politely steer anything else back on topic.
- Speak naturally and conversationally, like a friendly motorcycle expert.
- Keep replies to two or three sentences.
- If you do not know a specific detail, say so honestly and stay on topic.
"""

DEFAULT_LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


# ---------------------------------------------------------------------------
# Opaque behavioural config passed through to the upstream
# ---------------------------------------------------------------------------

class LiveSetup(BaseModel):
    """Everything the upstream needs to shape its replies.  Not interpreted locally."""
    model: str
    response_modalities: list[str] = Field(default_factory=lambda: ["AUDIO"])
    system_instruction: Optional[str] = None
    voice_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class UpstreamConfig(BaseModel):
    """Gemini Live endpoint parameters."""
    url: str = Field(default=DEFAULT_LIVE_URL, description="BidiGenerateContent WebSocket URL")
    api_key: str = Field(default="", repr=False, description="Gemini API key")
    model: str = Field(default="gemini-2.0-flash-live-001", description="Live model ID")
    response_modalities: list[str] = Field(default_factory=lambda: ["AUDIO"], description="AUDIO or TEXT")
    voice_name: Optional[str] = Field(default=None, description="Prebuilt voice (e.g. 'Puck')")
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, description="System instruction")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="WebSocket open timeout")
    setup_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="Wait for setupComplete")

    def live_setup(self, modalities: Optional[list[str]] = None) -> LiveSetup:
        return LiveSetup(
            model=self.model,
            response_modalities=list(modalities or self.response_modalities),
            system_instruction=self.system_instruction or None,
            voice_name=self.voice_name,
        )


class SessionConfig(BaseModel):
    """Behaviour flags for the session state machine."""
    forward_text: bool = Field(default=True, description="Emit text_response for text parts of a turn")
    signal_audio_stream_end: bool = Field(default=True, description="stop_recording → audioStreamEnd upstream")
    max_send_failures: int = Field(default=3, ge=1, le=100, description="Consecutive transport failures before close")
    max_pending_input: int = Field(default=64, ge=1, le=10_000, description="Queued audio/text frames before new ones are dropped")


class ServerConfig(BaseModel):
    """HTTP / WebSocket front door."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    client_url: str = Field(default="http://localhost:3000", description="Allowed CORS origin")
    max_sessions: int = Field(default=200, ge=1, description="Concurrent client sessions")
    test_message_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class RelayConfig(BaseModel):
    """Complete runtime configuration for the relay."""
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # -- File ------------------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "RelayConfig":
        """Read a RELAY_CONFIG JSON file.  A missing or unusable file means defaults."""
        p = Path(path)
        try:
            raw = p.read_bytes()
        except FileNotFoundError:
            log.info("event=config_file_missing path=%s (using defaults)", p)
            return cls()
        except OSError as exc:
            log.warning("event=config_file_unreadable path=%s error=%s (using defaults)", p, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_file_invalid path=%s errors=%d (using defaults)", p, exc.error_count())
            return cls()
        log.info("event=config_file_loaded path=%s", p)
        return config

    def merge_patch(self, patch: dict) -> "RelayConfig":
        """Copy of this config with a partial nested dict applied and re-validated.

            RelayConfig().merge_patch({"session": {"forward_text": False}})
        """
        return type(self).model_validate(_merged(self.model_dump(), patch))

    # -- Environment -----------------------------------------------------------

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> "RelayConfig":
        """Build config from RELAY_CONFIG (optional JSON file) plus env overrides."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        path = env.get("RELAY_CONFIG")
        config = cls.load(path) if path else cls()

        patch: dict[str, Any] = {}
        for var, (section, key) in _ENV_OVERRIDES.items():
            value = env.get(var)
            if value:
                patch.setdefault(section, {})[key] = value
        if not patch:
            return config
        return config.merge_patch(patch)


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GEMINI_API_KEY":          ("upstream", "api_key"),
    "GEMINI_MODEL":            ("upstream", "model"),
    "GEMINI_LIVE_URL":         ("upstream", "url"),
    "GEMINI_VOICE":            ("upstream", "voice_name"),
    "CLIENT_URL":              ("server", "client_url"),
    "HOST":                    ("server", "host"),
    "PORT":                    ("server", "port"),
    "MAX_CONCURRENT_SESSIONS": ("server", "max_sessions"),
}


def _merged(base: dict, patch: dict) -> dict:
    """`base` with `patch` laid over it; nested dicts merge, anything else replaces."""
    out = dict(base)
    for key, value in patch.items():
        current = out.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = _merged(current, value)
        else:
            out[key] = value
    return out
