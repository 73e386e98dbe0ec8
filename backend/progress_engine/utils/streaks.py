"""Streak continuity and monthly XP projections.

`next_streak` is the rule the ledger writes with. `effective_streak` is
the read-only projection dashboards show; it decays immediately while the
stored value only decays on the next award. Both count gaps in UTC
calendar days, never in elapsed milliseconds.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..models import as_utc

GRACE_GAP_DAYS = 2


def day_gap(last_active: datetime, now: datetime) -> int:
    """Number of UTC calendar days between `last_active` and `now`."""
    return (as_utc(now).date() - as_utc(last_active).date()).days


def next_streak(streak_count: int, last_active: Optional[datetime], is_premium: bool, now: datetime) -> int:
    """Streak to store after a rewarded activity at `now`."""
    if last_active is None:
        return 1
    gap = day_gap(last_active, now)
    if gap == 0:
        return streak_count
    if gap == 1:
        return streak_count + 1
    if is_premium and gap == GRACE_GAP_DAYS:
        return streak_count + 1
    return 1


def effective_streak(streak_count: int, last_active: Optional[datetime], is_premium: bool, now: datetime) -> int:
    """Streak to display at `now`, without touching the stored value."""
    if last_active is None or streak_count <= 0:
        return 0
    gap = day_gap(last_active, now)
    if gap in (0, 1):
        return streak_count
    if is_premium and gap == GRACE_GAP_DAYS:
        return streak_count
    return 0


def is_new_month(reset_at: datetime, now: datetime) -> bool:
    reset_at, now = as_utc(reset_at), as_utc(now)
    return (now.year, now.month) != (reset_at.year, reset_at.month)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Start of the UTC month containing `now` and start of the next one."""
    now = as_utc(now)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        return start, datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return start, datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def effective_monthly_xp(monthly_xp: int, reset_at: datetime, now: datetime) -> int:
    """Monthly XP to display; a stale month shows as 0."""
    return 0 if is_new_month(reset_at, now) else monthly_xp
