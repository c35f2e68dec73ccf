"""Realtime voice conversation: wire protocol, transport and state machine."""

from .controller import VoiceSessionController
from .protocol import AudioChunk, VoiceEvent, VoiceEventType
from .state import TRANSITIONS, VoiceSession, VoiceState
from .streamer import AudioChunkStreamer
from .transport import VoiceTransport, WebSocketTransport

__all__ = [
    "AudioChunk",
    "AudioChunkStreamer",
    "TRANSITIONS",
    "VoiceEvent",
    "VoiceEventType",
    "VoiceSession",
    "VoiceSessionController",
    "VoiceState",
    "VoiceTransport",
    "WebSocketTransport",
]
