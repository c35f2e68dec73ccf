"""Wire format for the voice channel.

Control messages are JSON text frames ``{"type": ..., ...}``. Audio travels
as binary frames: a 4-byte big-endian sequence index, one flag byte (bit 0
set on the final chunk of an utterance), then the raw audio payload.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

_CHUNK_HEADER = struct.Struct(">IB")
_FLAG_LAST = 0x01

START_SESSION = "start-session"
END_SESSION = "end-session"


class VoiceEventType(str, Enum):
    """Events delivered to the controller's dispatcher."""

    CONNECTION_OPEN = "connection-open"
    SESSION_STARTED = "session-started"
    TRANSCRIPTION_PARTIAL = "transcription-partial"
    TRANSCRIPTION_FINAL = "transcription-final"
    AI_RESPONSE = "ai-response"
    MINUTES_REMAINING = "minutes-remaining"
    LIMIT_REACHED = "limit-reached"
    SESSION_ENDED = "session-ended"
    ERROR = "error"
    TRANSPORT_CLOSED = "transport-closed"
    UNKNOWN = "unknown"


# Older servers emit socket-style names.
_ALIASES = {
    "transcription": VoiceEventType.TRANSCRIPTION_FINAL,
    "connected": VoiceEventType.CONNECTION_OPEN,
}


@dataclass(frozen=True)
class VoiceEvent:
    type: VoiceEventType
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> Optional[str]:
        value = self.data.get("text")
        return value if isinstance(value, str) else None

    @property
    def message(self) -> Optional[str]:
        value = self.data.get("message")
        return value if isinstance(value, str) else None

    def int_field(self, name: str) -> Optional[int]:
        value = self.data.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)


@dataclass(frozen=True)
class AudioChunk:
    """One ordered slice of a captured utterance."""

    sequence_index: int
    data: bytes
    is_last: bool


def parse_server_message(raw: str | bytes) -> VoiceEvent:
    """Decode a JSON control frame; malformed frames become UNKNOWN events."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return VoiceEvent(VoiceEventType.UNKNOWN, {"raw": raw})
    if not isinstance(payload, dict):
        return VoiceEvent(VoiceEventType.UNKNOWN, {"raw": payload})
    name = str(payload.get("type") or payload.get("event") or "").strip().lower()
    name = name.replace("_", "-")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    if name in _ALIASES:
        return VoiceEvent(_ALIASES[name], dict(data))
    try:
        event_type = VoiceEventType(name)
    except ValueError:
        event_type = VoiceEventType.UNKNOWN
    return VoiceEvent(event_type, dict(data))


def control_message(message_type: str, **fields: Any) -> str:
    return json.dumps({"type": message_type, **fields})


def encode_chunk_frame(chunk: AudioChunk) -> bytes:
    flags = _FLAG_LAST if chunk.is_last else 0
    return _CHUNK_HEADER.pack(chunk.sequence_index, flags) + chunk.data


def decode_chunk_frame(frame: bytes) -> AudioChunk:
    if len(frame) < _CHUNK_HEADER.size:
        raise ValueError("audio frame shorter than its header")
    index, flags = _CHUNK_HEADER.unpack_from(frame)
    return AudioChunk(
        sequence_index=index,
        data=bytes(frame[_CHUNK_HEADER.size :]),
        is_last=bool(flags & _FLAG_LAST),
    )


__all__ = [
    "AudioChunk",
    "END_SESSION",
    "START_SESSION",
    "VoiceEvent",
    "VoiceEventType",
    "control_message",
    "decode_chunk_frame",
    "encode_chunk_frame",
    "parse_server_message",
]
