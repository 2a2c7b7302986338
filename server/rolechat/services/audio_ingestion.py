"""Decode transport-encoded audio and sniff its container format."""
from __future__ import annotations

import base64
import binascii
import logging
from enum import Enum
from typing import Optional

from ..errors import ValidationError

logger = logging.getLogger(__name__)

# A canonical WAV header is 44 bytes; anything shorter cannot be a real recording.
MIN_AUDIO_BYTES = 44

_CONTENT_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
    ".m4a": "audio/mp4",
}


class FormatTag(str, Enum):
    WAV = "wav"
    MP3 = "mp3"
    OGG = "ogg"
    FLAC = "flac"
    WEBM = "webm"
    UNKNOWN = "unknown"


def decode(payload: Optional[str]) -> bytes:
    """Decode base64 audio, stripping an optional ``data:...;base64,`` descriptor."""

    if not payload:
        raise ValidationError("audio data is empty")

    encoded = payload.strip()
    if "," in encoded:
        descriptor, encoded = encoded.split(",", 1)
        logger.debug("Stripped audio descriptor %r", descriptor[:64])
    # MIME-style base64 may be wrapped across lines.
    encoded = "".join(encoded.split())
    if not encoded:
        raise ValidationError("audio data is empty")

    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"audio data is not valid base64: {exc}") from exc

    if not data:
        raise ValidationError("audio data is empty")
    logger.debug("Decoded %d bytes of audio from %d chars", len(data), len(encoded))
    return data


def detect_format(data: bytes) -> FormatTag:
    """Classify an audio buffer by its magic bytes.

    Unrecognized buffers are reported as ``UNKNOWN`` rather than rejected.
    """

    if len(data) < MIN_AUDIO_BYTES:
        raise ValidationError(
            f"audio payload too small ({len(data)} bytes); expected at least {MIN_AUDIO_BYTES}"
        )

    head = data[:4]
    if head == b"RIFF" and data[8:12] == b"WAVE":
        return FormatTag.WAV
    if data[:3] == b"ID3" or (data[0] == 0xFF and (data[1] & 0xE0) == 0xE0):
        return FormatTag.MP3
    if head == b"OggS":
        return FormatTag.OGG
    if head == b"fLaC":
        return FormatTag.FLAC
    if head == b"\x1a\x45\xdf\xa3":
        return FormatTag.WEBM

    logger.warning("Unknown audio container, leading bytes: %s", data[:16].hex())
    return FormatTag.UNKNOWN


def resolve_format(detected: FormatTag, declared: Optional[str] = None) -> str:
    """Pick the format name used for storage and transcription."""

    if detected is not FormatTag.UNKNOWN:
        return detected.value
    normalized = (declared or "").strip().lower().lstrip(".")
    return normalized or FormatTag.WAV.value


def content_type_for(extension: str) -> str:
    return _CONTENT_TYPES.get(extension.lower(), "application/octet-stream")
