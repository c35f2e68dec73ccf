"""Advisory quota gate backed by cached server usage counters."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from assistant_client.config.default import SUBSCRIPTION_STATUS_ENDPOINT
from assistant_client.errors import LimitReachedError
from assistant_client.http.gateway import SessionGateway
from assistant_client.usage.stats import (
    UNLIMITED,
    UsageResource,
    UsageStats,
    countdown_to,
    format_countdown,
)
from assistant_client.utils.logger import LOGGER
from assistant_client.utils.timestamps import utcnow


class UsageGate:
    """Caches UsageStats and answers limit questions locally.

    The gate only disables affordances to save round trips; the server still
    enforces every limit and answers with 429 when it is exceeded.
    """

    def __init__(
        self,
        gateway: Optional[SessionGateway] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._clock = clock
        self._stats: Optional[UsageStats] = None

    @property
    def stats(self) -> Optional[UsageStats]:
        return self._stats

    @property
    def loaded(self) -> bool:
        return self._stats is not None

    async def refresh(self) -> UsageStats:
        """Fetch the latest counters from the server."""
        if self._gateway is None:
            raise RuntimeError("UsageGate has no gateway to refresh from")
        response = await self._gateway.get(SUBSCRIPTION_STATUS_ENDPOINT)
        stats = UsageStats.from_payload(response.json_dict())
        self.update(stats)
        return stats

    def update(self, stats: UsageStats) -> None:
        self._stats = stats
        LOGGER.debug(
            "Usage updated (messages=%d, voice=%d, photos=%d)",
            stats.messages_remaining,
            stats.voice_minutes_remaining,
            stats.photos_remaining,
        )

    def clear(self) -> None:
        self._stats = None

    def remaining(self, resource: UsageResource) -> int:
        if self._stats is None:
            return UNLIMITED
        return self._stats.remaining(resource)

    def limit_reached(self, resource: UsageResource) -> bool:
        if self._stats is None:
            return False
        return self._stats.limit_reached(resource)

    @property
    def messages_remaining(self) -> int:
        return self.remaining(UsageResource.MESSAGE)

    @property
    def voice_minutes_remaining(self) -> int:
        return self.remaining(UsageResource.VOICE)

    @property
    def photos_remaining(self) -> int:
        return self.remaining(UsageResource.PHOTO)

    @property
    def message_limit_reached(self) -> bool:
        return self.limit_reached(UsageResource.MESSAGE)

    @property
    def voice_limit_reached(self) -> bool:
        return self.limit_reached(UsageResource.VOICE)

    @property
    def photo_limit_reached(self) -> bool:
        return self.limit_reached(UsageResource.PHOTO)

    def can_send_message(self) -> bool:
        return not self.message_limit_reached

    def can_start_voice(self) -> bool:
        return not self.voice_limit_reached

    def can_upload_photo(self) -> bool:
        return not self.photo_limit_reached

    def record_usage(self, resource: UsageResource, amount: int = 1) -> None:
        """Apply a local decrement after a successful exchange."""
        if self._stats is None or amount <= 0:
            return
        current = self._stats.remaining(resource)
        if current == UNLIMITED:
            return
        self._stats = self._stats.with_remaining(resource, max(0, current - amount))

    def set_remaining(self, resource: UsageResource, remaining: int) -> None:
        """Overwrite one counter from a pushed update (e.g. voice minutes)."""
        base = self._stats or UsageStats()
        self._stats = base.with_remaining(resource, remaining)

    def record_limit(
        self, error: LimitReachedError, resource: Optional[UsageResource] = None
    ) -> None:
        """Mark a resource exhausted from a server limit response."""
        if resource is None and error.resource:
            try:
                resource = UsageResource(error.resource)
            except ValueError:
                resource = None
        if resource is None:
            LOGGER.warning("Limit error without a known resource: %s", error.detail)
            return
        base = self._stats or UsageStats()
        stats = base.with_remaining(resource, 0)
        if error.reset_time is not None:
            stats = replace(stats, reset_time=error.reset_time)
        self._stats = stats
        LOGGER.info("%s limit reached; resets at %s", resource.value, error.reset_time)

    @property
    def reset_time(self) -> Optional[datetime]:
        return self._stats.reset_time if self._stats else None

    def countdown(self, now: Optional[datetime] = None) -> timedelta:
        return countdown_to(self.reset_time, now or self._clock())

    def format_countdown(self, now: Optional[datetime] = None) -> str:
        return format_countdown(self.countdown(now))
