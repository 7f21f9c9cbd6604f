"""
Voice Relay — browser ↔ Gemini Live session relay.

Public surface re-exported for the server entry point and tests.
"""

from voice_relay.config import RelayConfig
from voice_relay.registry import SessionRegistry
from voice_relay.session import SessionState, VoiceSession

__all__ = ["RelayConfig", "SessionRegistry", "SessionState", "VoiceSession"]
__version__ = "1.0.0"
