from __future__ import annotations

from datetime import datetime, timedelta

from .models import (
    PRIORITY_BACKGROUND,
    PRIORITY_NORMAL,
    PRIORITY_URGENT,
    PRIORITY_WELCOME,
)

IMMEDIATE_WINDOW = timedelta(minutes=1)
URGENT_WINDOW = timedelta(hours=4)
NORMAL_WINDOW = timedelta(hours=24)


def calculate_priority(
    scheduled_at: datetime,
    now: datetime,
    is_welcome: bool = False,
    immediate: bool = False,
) -> int:
    """Map a scheduled instant to a claim priority.

    Welcome jobs and anything due within a minute get the reserved maximum.
    Past due and short horizons are urgent; a day or more out is background.
    """
    if is_welcome or immediate:
        return PRIORITY_WELCOME
    until = scheduled_at - now
    if abs(until) < IMMEDIATE_WINDOW:
        return PRIORITY_WELCOME
    if until < timedelta(0):
        return PRIORITY_URGENT
    if until < URGENT_WINDOW:
        return PRIORITY_URGENT
    if until < NORMAL_WINDOW:
        return PRIORITY_NORMAL
    return PRIORITY_BACKGROUND


def default_process_not_before(scheduled_at: datetime, offset_minutes: int) -> datetime:
    return scheduled_at - timedelta(minutes=offset_minutes)
