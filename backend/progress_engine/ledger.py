"""XP and streak ledger.

`ProgressLedger.award_xp` is the only write path for `ProgressAccount`.
Each attempt runs as one transaction that reads the account, computes the
streak and month rollover, and applies everything in a single UPDATE with
SQL-side increments. The store must run at serializable isolation or lock
the row on read (`SELECT ... FOR UPDATE`); the increments keep the counters
exact even where the lock is not available (SQLite).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlmodel import Session

from .errors import LedgerContention, NotFound, StoreUnavailable, ValidationError
from .models import utcnow
from .repositories import ProgressAccountRepository
from .utils.streaks import is_new_month, next_streak

_LOGGER = logging.getLogger("progress_engine.ledger")

# serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}


class RewardReason(str, Enum):
    REVIEW = "review"
    REVIEW_WITH_AUDIO = "review_with_audio"
    ITEM_CREATED = "item_created"


REWARD_TARIFF = {
    RewardReason.REVIEW: 10,
    RewardReason.REVIEW_WITH_AUDIO: 15,
    RewardReason.ITEM_CREATED: 50,
}


def reward_amount(reason) -> int:
    """Look up the fixed amount for `reason`; clients never send amounts."""
    try:
        return REWARD_TARIFF[RewardReason(reason)]
    except (ValueError, KeyError):
        raise ValidationError(f"unknown reward reason: {reason!r}") from None


@dataclass(frozen=True)
class AwardResult:
    xp_awarded: int
    total_xp: int
    monthly_xp: int
    streak_count: int


def _is_conflict(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return "database is locked" in message or "could not serialize" in message


class ProgressLedger:
    """Transactional accumulator for XP and daily streaks."""

    def __init__(
        self,
        engine,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
        backoff_seconds: float = 0.05,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.engine = engine
        self.max_retries = max_retries
        self._clock = clock
        self._backoff_seconds = backoff_seconds

    def award_for(self, user_id: int, reason) -> AwardResult:
        """Award the tariff amount for `reason`."""
        return self.award_xp(user_id, reward_amount(reason), reason=RewardReason(reason).value)

    def award_xp(self, user_id: int, amount: int, reason: Optional[str] = None) -> AwardResult:
        """Add `amount` XP to `user_id` and advance the streak.

        Conflicts are retried as a whole up to `max_retries` attempts before
        raising `LedgerContention`; other store failures raise
        `StoreUnavailable`. A failed attempt is rolled back completely.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("reward amount must be a positive integer")
        for attempt in range(1, self.max_retries + 1):
            try:
                with Session(self.engine) as session, session.begin():
                    result = self._apply(session, user_id, amount)
            except DBAPIError as exc:
                if not _is_conflict(exc):
                    _LOGGER.exception("ledger_store_error user_id=%s", user_id)
                    raise StoreUnavailable("progress store unavailable") from exc
                _LOGGER.warning(
                    "ledger_conflict %s",
                    json.dumps({"user_id": user_id, "attempt": attempt, "max_retries": self.max_retries}),
                )
                if attempt < self.max_retries:
                    time.sleep(self._backoff_seconds * attempt)
                continue
            except SQLAlchemyError as exc:
                _LOGGER.exception("ledger_store_error user_id=%s", user_id)
                raise StoreUnavailable("progress store unavailable") from exc
            _LOGGER.info(
                "xp_awarded %s",
                json.dumps(
                    {
                        "user_id": user_id,
                        "amount": amount,
                        "reason": reason,
                        "total_xp": result.total_xp,
                        "streak_count": result.streak_count,
                        "attempt": attempt,
                    }
                ),
            )
            return result
        _LOGGER.error("ledger_contention user_id=%s attempts=%d", user_id, self.max_retries)
        raise LedgerContention(user_id, self.max_retries)

    def _apply(self, session: Session, user_id: int, amount: int) -> AwardResult:
        repo = ProgressAccountRepository(session)
        account = repo.get_for_update(user_id)
        if account is None:
            raise NotFound(f"progress account not found: {user_id}")
        now = self._clock()
        new_month = is_new_month(account.monthly_xp_reset_at, now)
        streak = next_streak(account.streak_count, account.last_active_date, account.is_premium, now)
        repo.apply_award(user_id, amount, streak, now, new_month)
        total_xp, monthly_xp, streak_count = repo.read_counters(user_id)
        return AwardResult(xp_awarded=amount, total_xp=total_xp, monthly_xp=monthly_xp, streak_count=streak_count)
