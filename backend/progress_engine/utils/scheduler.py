"""Spaced-repetition review scheduling.

Pure functions only: callers load an item, compute the new state here and
persist it themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from ..errors import ValidationError

INITIAL_INTERVAL_MS = 900_000  # 15 minutes
DEFAULT_EASE = 2.5
EASE_MIN = 1.3
EASE_MAX = 3.0
EASE_STEP_UP = 0.1
EASE_STEP_DOWN = 0.2


class ReviewOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    @classmethod
    def parse(cls, raw) -> "ReviewOutcome":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown review outcome: {raw!r}") from None


@dataclass(frozen=True)
class ScheduleState:
    """Scheduling fields of a learning item."""

    ease_factor: float = DEFAULT_EASE
    current_interval_ms: int = 0
    consecutive_correct: int = 0
    last_reviewed_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None


def _clamp_ease(value: float) -> float:
    return round(min(max(value, EASE_MIN), EASE_MAX), 2)


def review(state: ScheduleState, outcome, now: datetime) -> ScheduleState:
    """Return the state after a review with `outcome` at `now`.

    Success grows the interval by the current ease factor (or starts it at
    `INITIAL_INTERVAL_MS`) and raises the ease; failure makes the item due
    immediately and lowers the ease. Ease is kept within
    `[EASE_MIN, EASE_MAX]` and rounded to two decimals.
    """
    outcome = ReviewOutcome.parse(outcome)
    ease = _clamp_ease(state.ease_factor)
    if outcome is ReviewOutcome.SUCCESS:
        current = max(int(state.current_interval_ms or 0), 0)
        interval = int(round(current * ease)) if current > 0 else INITIAL_INTERVAL_MS
        return replace(
            state,
            ease_factor=_clamp_ease(ease + EASE_STEP_UP),
            current_interval_ms=interval,
            consecutive_correct=state.consecutive_correct + 1,
            last_reviewed_at=now,
            next_review_at=now + timedelta(milliseconds=interval),
        )
    return replace(
        state,
        ease_factor=_clamp_ease(ease - EASE_STEP_DOWN),
        current_interval_ms=0,
        consecutive_correct=0,
        last_reviewed_at=now,
        next_review_at=now,
    )


def rotate(index: int, variant_count: int) -> int:
    """Advance the cyclic variant pointer."""
    if variant_count <= 0:
        raise ValidationError("item has no variants to rotate")
    return (index + 1) % variant_count
