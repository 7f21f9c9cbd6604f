"""
codec.py — Voice Relay · Frame Codec
====================================
Raw mono 16-bit little-endian PCM ↔ base64 text for the JSON transport.

Pure functions, no state: safe to call from any task or thread.
"""

from __future__ import annotations

import base64
import binascii
from typing import Union

import numpy as np

from voice_relay.errors import MalformedFrame

INBOUND_SAMPLE_RATE  = 16000   # browser mic → upstream
OUTBOUND_SAMPLE_RATE = 24000   # upstream voice → browser speaker
SAMPLE_WIDTH = 2               # bytes per int16 sample

_PCM16_LE = np.dtype("<i2")

PCMInput = Union[bytes, bytearray, memoryview, np.ndarray]


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def pcm_duration_ms(nbytes: int, sample_rate: int) -> float:
    """Playback length of `nbytes` of mono PCM16 at `sample_rate`."""
    return nbytes / SAMPLE_WIDTH / sample_rate * 1000.0


def pcm_rms(pcm: bytes) -> float:
    """RMS level of PCM16 bytes in int16 units (0.0 for silence or no samples)."""
    samples = np.frombuffer(pcm, dtype=_PCM16_LE, count=len(pcm) // SAMPLE_WIDTH)
    if not samples.size:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))


def _to_bytes(pcm: PCMInput) -> bytes:
    if isinstance(pcm, np.ndarray):
        if pcm.dtype.kind not in "iu" or pcm.dtype.itemsize != SAMPLE_WIDTH:
            raise MalformedFrame(f"expected int16 samples, got {pcm.dtype}")
        return pcm.astype(_PCM16_LE, copy=False).tobytes()
    return bytes(pcm)


def encode_audio(pcm: PCMInput) -> str:
    """Encode PCM16 bytes (or an int16 sample array) as base64 text."""
    data = _to_bytes(pcm)
    if len(data) % SAMPLE_WIDTH:
        raise MalformedFrame(f"odd PCM length {len(data)}")
    return base64.b64encode(data).decode("ascii")


def decode_audio(token: str) -> bytes:
    """Decode base64 text back to PCM16 bytes.

    Raises MalformedFrame when the token is not a string, is not valid
    base64, or does not hold a whole number of samples.
    """
    if not isinstance(token, str):
        raise MalformedFrame(f"audio payload must be text, got {type(token).__name__}")
    try:
        data = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedFrame(f"invalid base64 audio: {exc}") from exc
    if len(data) % SAMPLE_WIDTH:
        raise MalformedFrame(f"truncated PCM frame ({len(data)} bytes)")
    return data


def decode_samples(token: str) -> np.ndarray:
    """decode_audio() as a little-endian int16 sample array."""
    return np.frombuffer(decode_audio(token), dtype=_PCM16_LE)
