"""
events.py — Voice Relay · Normalized Upstream Events
====================================================
The upstream adapter translates every server push into one of these.  The
`turn` field is the adapter's upstream turn index; it advances after each
turn-complete or interruption so the session can recognise fragments that
belong to a turn it already discarded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class UpstreamErrorKind(str, Enum):
    CONNECTION = "connection"   # fatal: the upstream link is gone
    PROTOCOL   = "protocol"     # unparseable / unexpected message
    SERVER     = "server"       # error reported by the service
    GO_AWAY    = "go_away"      # service announced an upcoming disconnect

    @property
    def fatal(self) -> bool:
        return self is UpstreamErrorKind.CONNECTION


@dataclass(frozen=True)
class AudioFragment:
    data: bytes = field(repr=False)
    turn: int = 0


@dataclass(frozen=True)
class TextFragment:
    text: str
    turn: int = 0


@dataclass(frozen=True)
class TurnComplete:
    turn: int = 0


@dataclass(frozen=True)
class Interrupted:
    """Upstream stopped generating because it heard the user."""
    turn: int = 0


@dataclass(frozen=True)
class UpstreamError:
    kind: UpstreamErrorKind
    detail: str = ""

    @property
    def fatal(self) -> bool:
        return self.kind.fatal


@dataclass(frozen=True)
class UpstreamClosed:
    reason: str = ""


UpstreamEvent = Union[
    AudioFragment, TextFragment, TurnComplete, Interrupted, UpstreamError, UpstreamClosed,
]

_SANITIZED = {
    UpstreamErrorKind.CONNECTION: "Upstream connection error",
    UpstreamErrorKind.PROTOCOL:   "Upstream sent an unexpected message",
    UpstreamErrorKind.SERVER:     "Upstream service error",
    UpstreamErrorKind.GO_AWAY:    "Upstream service is about to disconnect",
}


def sanitized_message(event: UpstreamError) -> str:
    return _SANITIZED[event.kind]
