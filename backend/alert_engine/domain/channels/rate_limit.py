from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from alert_engine.domain.channels.records import DeliveryRecordStore
from alert_engine.domain.channels.schemas import NotificationChannel

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str | None = None


ALLOWED = RateLimitDecision(allowed=True)


class ChannelRateLimiter:
    """Caps deliveries per channel using delivery records as the counting source.

    Counting failures allow the send: a broken counter must never drop an alert.
    """

    def __init__(self, records: DeliveryRecordStore) -> None:
        self._records = records

    async def check(self, channel: NotificationChannel, now: datetime) -> RateLimitDecision:
        limits = (
            ("hour", HOUR, channel.max_notifications_per_hour),
            ("day", DAY, channel.max_notifications_per_day),
        )
        for label, window, limit in limits:
            if not limit or limit <= 0:
                continue
            try:
                count = await self._records.count_since(channel.id, now - window)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "rate_limit_check_failed",
                    extra={"extra": {"channel_id": channel.id, "window": label, "reason": type(exc).__name__}},
                )
                return ALLOWED
            if count >= limit:
                return RateLimitDecision(
                    allowed=False,
                    reason=f"Rate limit exceeded: {count}/{limit} notifications per {label}",
                )
        return ALLOWED
