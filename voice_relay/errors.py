"""
errors.py — Voice Relay · Error Taxonomy
========================================
Exceptions raised at the codec / upstream seams.  The session layer catches
them and turns each into a sanitized client `error` event; raw upstream
detail only ever reaches the log.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RelayError(Exception):
    """Base class for every error raised inside the relay core."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail


class MalformedFrame(RelayError):
    """Inbound payload could not be decoded (bad base64, odd length, bad JSON)."""


class DuplicateSession(RelayError):
    """A session id is still held by a live registry record."""


# ---------------------------------------------------------------------------
# Upstream connect / send / close
# ---------------------------------------------------------------------------

class ConnectKind(str, Enum):
    AUTH     = "auth"
    NETWORK  = "network"
    REJECTED = "rejected"
    TIMEOUT  = "timeout"


class ConnectError(RelayError):
    """Upstream open failed.  Fatal to the session; never retried by the core."""

    def __init__(self, kind: ConnectKind, detail: str = "") -> None:
        super().__init__(detail)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


class SendErrorKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    TRANSPORT     = "transport"


class SendError(RelayError):
    """Forwarding audio/text upstream failed.  Recoverable unless repeated."""

    def __init__(self, kind: SendErrorKind, detail: str = "") -> None:
        super().__init__(detail)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


class CloseError(RelayError):
    """Underlying upstream close failed unexpectedly."""


# ---------------------------------------------------------------------------
# Client-facing messages
# ---------------------------------------------------------------------------

_CONNECT_MESSAGES = {
    ConnectKind.AUTH:     "Upstream authentication failed",
    ConnectKind.NETWORK:  "Upstream service unreachable",
    ConnectKind.REJECTED: "Upstream service rejected the session",
    ConnectKind.TIMEOUT:  "Upstream service did not respond in time",
}


def client_message(exc: Optional[BaseException]) -> str:
    """Coarse, leak-free message for a client `error` frame."""
    if isinstance(exc, ConnectError):
        return _CONNECT_MESSAGES.get(exc.kind, "Failed to connect to upstream")
    if isinstance(exc, SendError):
        if exc.kind is SendErrorKind.NOT_CONNECTED:
            return "Upstream session not connected"
        return "Failed to forward input upstream"
    if isinstance(exc, MalformedFrame):
        return "Malformed frame"
    return "Failed to process message"
