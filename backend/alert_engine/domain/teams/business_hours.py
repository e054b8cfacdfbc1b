from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alert_engine.domain.severity.policy import SeverityConfig
from alert_engine.domain.teams.schemas import BusinessHours, TimeWindow

logger = logging.getLogger(__name__)

# Alerts without a team escalate on any weekday, all day.
NO_TEAM_BUSINESS_HOURS = BusinessHours(
    timezone="UTC",
    weekdays=TimeWindow("00:00", "23:59"),
    weekends_enabled=False,
)
SEARCH_HORIZON_DAYS = 8


@dataclass(frozen=True)
class BusinessHoursState:
    is_business_hours: bool
    is_weekend: bool


def parse_hhmm(value: str | None) -> int | None:
    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        return None
    hours, minutes = int(parts[0]), int(parts[1])
    if hours > 23 or minutes > 59:
        return None
    return hours * 100 + minutes


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("business_hours_unknown_timezone", extra={"extra": {"timezone": name}})
        return ZoneInfo("UTC")


def _window_for(hours: BusinessHours, weekend: bool) -> TimeWindow | None:
    if weekend:
        return hours.weekends if hours.weekends_enabled else None
    return hours.weekdays


def evaluate_business_hours(hours: BusinessHours | None, now: datetime) -> BusinessHoursState:
    hours = hours or NO_TEAM_BUSINESS_HOURS
    local = now.astimezone(resolve_zone(hours.timezone))
    is_weekend = local.weekday() >= 5
    window = _window_for(hours, is_weekend)
    if window is None:
        return BusinessHoursState(is_business_hours=False, is_weekend=is_weekend)
    start, end = parse_hhmm(window.start), parse_hhmm(window.end)
    if start is None or end is None:
        return BusinessHoursState(is_business_hours=False, is_weekend=is_weekend)
    current = local.hour * 100 + local.minute
    return BusinessHoursState(is_business_hours=start <= current <= end, is_weekend=is_weekend)


def next_business_hours_start(
    hours: BusinessHours | None,
    now: datetime,
    *,
    allow_weekends: bool = True,
) -> datetime | None:
    """First window start strictly after `now`, in UTC.

    Honours the team's timezone and configured start times and walks forward
    day by day, so a Friday-evening alert for a weekend-disabled team lands on
    Monday. Returns None when no day in the search horizon has a usable window.
    """
    hours = hours or NO_TEAM_BUSINESS_HOURS
    zone = resolve_zone(hours.timezone)
    local_now = now.astimezone(zone)
    for offset in range(SEARCH_HORIZON_DAYS):
        day = local_now.date() + timedelta(days=offset)
        is_weekend = day.weekday() >= 5
        if is_weekend and not allow_weekends:
            continue
        window = _window_for(hours, is_weekend)
        if window is None:
            continue
        start = parse_hhmm(window.start)
        if start is None or parse_hhmm(window.end) is None:
            continue
        candidate = datetime.combine(day, time(start // 100, start % 100), tzinfo=zone)
        if candidate <= local_now:
            continue
        return candidate.astimezone(timezone.utc)
    return None


def should_escalate(config: SeverityConfig, is_business_hours: bool, is_weekend: bool) -> bool:
    if config.requires_immediate_attention:
        return True
    if config.allowed_business_hours_only and not is_business_hours:
        return False
    if is_weekend and not config.weekend_escalation:
        return False
    return True
