from __future__ import annotations

from datetime import datetime, time

import pytz

from backend.app.models import WEEKDAYS, CampaignRecord


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":", 1)
    return time(int(hour), int(minute))


def resolve_timezone(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def is_within_call_window(
    campaign: CampaignRecord, *, now: datetime, timezone_name: str = "UTC"
) -> tuple[bool, str]:
    """Check whether ``now`` falls inside the campaign's calling window.

    ``now`` is naive UTC (as stored everywhere else); it is converted to
    ``timezone_name`` before comparing weekday and HH:MM bounds, both inclusive.
    Returns ``(allowed, reason)``.
    """
    tz = resolve_timezone(timezone_name)
    if now.tzinfo is None:
        local = pytz.UTC.localize(now).astimezone(tz)
    else:
        local = now.astimezone(tz)

    day_name = WEEKDAYS[local.weekday()]
    if day_name not in campaign.call_window_days:
        return False, f"calling_not_allowed_on_{day_name}"

    start = _parse_hhmm(campaign.call_window_start)
    end = _parse_hhmm(campaign.call_window_end)
    current = local.time().replace(second=0, microsecond=0)
    if start <= current <= end:
        return True, "within_call_window"
    return False, f"outside_call_window_{campaign.call_window_start}_{campaign.call_window_end}"
