import itertools
import random
from datetime import datetime, timedelta, timezone

import pytest

from progress_engine.errors import ValidationError
from progress_engine.utils.scheduler import (
    EASE_MAX,
    EASE_MIN,
    INITIAL_INTERVAL_MS,
    ReviewOutcome,
    ScheduleState,
    review,
    rotate,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_first_success_starts_initial_interval():
    state = review(ScheduleState(), "success", NOW)
    assert state.current_interval_ms == INITIAL_INTERVAL_MS == 900_000
    assert state.ease_factor == 2.6
    assert state.consecutive_correct == 1
    assert state.last_reviewed_at == NOW
    assert state.next_review_at == NOW + timedelta(minutes=15)


def test_second_success_multiplies_by_ease():
    first = review(ScheduleState(), ReviewOutcome.SUCCESS, NOW)
    later = NOW + timedelta(minutes=20)
    second = review(first, ReviewOutcome.SUCCESS, later)
    assert second.current_interval_ms == 2_340_000
    assert second.ease_factor == 2.7
    assert second.consecutive_correct == 2
    assert second.next_review_at == later + timedelta(milliseconds=2_340_000)


def test_failure_resets_regardless_of_prior_state():
    state = ScheduleState(ease_factor=2.9, current_interval_ms=86_400_000, consecutive_correct=7)
    failed = review(state, "failure", NOW)
    assert failed.current_interval_ms == 0
    assert failed.consecutive_correct == 0
    assert failed.next_review_at == NOW
    assert failed.last_reviewed_at == NOW
    assert failed.ease_factor == 2.7


def test_ease_is_capped_and_floored():
    assert review(ScheduleState(ease_factor=2.95), "success", NOW).ease_factor == EASE_MAX
    assert review(ScheduleState(ease_factor=1.4), "failure", NOW).ease_factor == EASE_MIN
    state = ScheduleState()
    for _ in range(10):
        state = review(state, "failure", NOW)
    assert state.ease_factor == EASE_MIN


def test_ease_stays_in_bounds_for_random_sequences():
    rng = random.Random(42)
    for _ in range(200):
        state = ScheduleState()
        now = NOW
        for outcome in (rng.choice(["success", "failure"]) for _ in range(30)):
            state = review(state, outcome, now)
            now = now + timedelta(minutes=1)
            assert EASE_MIN <= state.ease_factor <= EASE_MAX


def test_out_of_range_stored_ease_is_clamped():
    assert review(ScheduleState(ease_factor=9.0), "failure", NOW).ease_factor == 2.8
    assert review(ScheduleState(ease_factor=0.5), "success", NOW).ease_factor == 1.4


def test_unknown_outcome_rejected():
    with pytest.raises(ValidationError):
        review(ScheduleState(), "maybe", NOW)


@pytest.mark.parametrize("index,count,expected", [(0, 3, 1), (1, 3, 2), (2, 3, 0), (0, 1, 0)])
def test_rotate_cycles(index, count, expected):
    assert rotate(index, count) == expected


def test_rotate_empty_variants_rejected():
    with pytest.raises(ValidationError):
        rotate(0, 0)


def test_rotate_full_cycle_returns_to_start():
    index = 0
    for _ in itertools.repeat(None, 4):
        index = rotate(index, 4)
    assert index == 0
