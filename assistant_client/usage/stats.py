"""Usage counters as reported by ``GET /subscription/status``."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from assistant_client.utils.timestamps import parse_timestamp, utcnow

UNLIMITED = -1


class UsageResource(str, Enum):
    MESSAGE = "message"
    VOICE = "voice"
    PHOTO = "photo"


# resource -> (flat remaining key, flat flag key, nested used key, nested limit key)
_PAYLOAD_KEYS: Dict[UsageResource, tuple[str, str, str, str]] = {
    UsageResource.MESSAGE: (
        "messagesRemaining",
        "messageLimitReached",
        "messagesUsed",
        "messageLimit",
    ),
    UsageResource.VOICE: (
        "voiceMinutesRemaining",
        "voiceLimitReached",
        "voiceMinutesUsed",
        "voiceLimit",
    ),
    UsageResource.PHOTO: (
        "photosRemaining",
        "photoLimitReached",
        "photosStored",
        "photoLimit",
    ),
}


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def normalize_remaining(value: Optional[int]) -> int:
    """Map a server count to ``-1`` (unlimited) or a non-negative remainder."""
    if value is None or value == UNLIMITED:
        return UNLIMITED
    return max(0, value)


@dataclass(frozen=True)
class UsageStats:
    """Snapshot of remaining allowances; ``-1`` means unlimited."""

    messages_remaining: int = UNLIMITED
    voice_minutes_remaining: int = UNLIMITED
    photos_remaining: int = UNLIMITED
    message_limit_reached: bool = False
    voice_limit_reached: bool = False
    photo_limit_reached: bool = False
    reset_time: Optional[datetime] = None
    tier: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "UsageStats":
        """Parse either the flat remaining-count payload or nested ``usage`` counters."""
        nested = data.get("usage") if isinstance(data.get("usage"), Mapping) else {}
        values: Dict[str, Any] = {
            "reset_time": parse_timestamp(
                data.get("resetTime") or nested.get("resetTime")
            ),
            "tier": data.get("subscriptionTier") or data.get("tier"),
        }
        for resource, (remaining_key, flag_key, used_key, limit_key) in _PAYLOAD_KEYS.items():
            if remaining_key in data:
                remaining = normalize_remaining(_as_int(data.get(remaining_key)))
                flag = bool(data.get(flag_key, remaining == 0))
            elif remaining_key in nested:
                remaining = normalize_remaining(_as_int(nested.get(remaining_key)))
                flag = bool(nested.get(flag_key, remaining == 0))
            else:
                used = _as_int(nested.get(used_key)) or 0
                limit = _as_int(nested.get(limit_key))
                if limit is None or limit == UNLIMITED:
                    remaining, flag = UNLIMITED, False
                else:
                    remaining = max(0, limit - used)
                    flag = used >= limit
            values[_field(resource, "remaining")] = remaining
            values[_field(resource, "flag")] = flag
        return cls(**values)

    def remaining(self, resource: UsageResource) -> int:
        if self.limit_reached(resource):
            return 0
        return getattr(self, _field(resource, "remaining"))

    def limit_reached(self, resource: UsageResource) -> bool:
        return bool(getattr(self, _field(resource, "flag")))

    def with_remaining(self, resource: UsageResource, remaining: int) -> "UsageStats":
        remaining = normalize_remaining(remaining)
        return replace(
            self,
            **{
                _field(resource, "remaining"): remaining,
                _field(resource, "flag"): remaining == 0,
            },
        )


def _field(resource: UsageResource, kind: str) -> str:
    names = {
        UsageResource.MESSAGE: ("messages_remaining", "message_limit_reached"),
        UsageResource.VOICE: ("voice_minutes_remaining", "voice_limit_reached"),
        UsageResource.PHOTO: ("photos_remaining", "photo_limit_reached"),
    }[resource]
    return names[0] if kind == "remaining" else names[1]


def countdown_to(reset_time: Optional[datetime], now: Optional[datetime] = None) -> timedelta:
    """Time left until ``reset_time``, never negative."""
    if reset_time is None:
        return timedelta(0)
    delta = reset_time - (now or utcnow())
    return max(delta, timedelta(0))


def format_countdown(delta: timedelta) -> str:
    """Render a countdown as ``HH:MM:SS``."""
    total = max(0, int(delta.total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
