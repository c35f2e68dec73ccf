"""Voice session states and the transitions allowed between them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from assistant_client.errors import InvalidTransitionError
from assistant_client.usage.stats import UNLIMITED


class VoiceState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SESSION_STARTED = "session_started"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


# States in which the elapsed-seconds timer advances.
ACTIVE_STATES: FrozenSet[VoiceState] = frozenset(
    {
        VoiceState.SESSION_STARTED,
        VoiceState.LISTENING,
        VoiceState.PROCESSING,
        VoiceState.SPEAKING,
    }
)

_ALWAYS = (VoiceState.ERROR, VoiceState.DISCONNECTED)

TRANSITIONS: Dict[VoiceState, FrozenSet[VoiceState]] = {
    VoiceState.DISCONNECTED: frozenset({VoiceState.CONNECTING, *_ALWAYS}),
    VoiceState.CONNECTING: frozenset({VoiceState.CONNECTED, *_ALWAYS}),
    VoiceState.CONNECTED: frozenset({VoiceState.SESSION_STARTED, *_ALWAYS}),
    VoiceState.SESSION_STARTED: frozenset({VoiceState.LISTENING, *_ALWAYS}),
    VoiceState.LISTENING: frozenset({VoiceState.PROCESSING, *_ALWAYS}),
    VoiceState.PROCESSING: frozenset({VoiceState.SPEAKING, *_ALWAYS}),
    VoiceState.SPEAKING: frozenset(
        {VoiceState.LISTENING, VoiceState.SESSION_STARTED, *_ALWAYS}
    ),
    VoiceState.ERROR: frozenset({VoiceState.CONNECTING, *_ALWAYS}),
}


def can_transition(current: VoiceState, target: VoiceState) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: VoiceState, target: VoiceState) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"{current.value} -> {target.value} is not a legal voice transition"
        )


@dataclass(frozen=True)
class VoiceSession:
    """Immutable snapshot published to listeners on every change."""

    state: VoiceState = VoiceState.DISCONNECTED
    elapsed_seconds: int = 0
    minutes_remaining: int = UNLIMITED
    current_transcription: Optional[str] = None
    current_ai_response: Optional[str] = None
    error_message: Optional[str] = None
    voice_session_id: Optional[str] = None
    limit_reset_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES


__all__ = [
    "ACTIVE_STATES",
    "TRANSITIONS",
    "VoiceSession",
    "VoiceState",
    "can_transition",
    "check_transition",
]
