"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the pure scheduling/streak functions and the ledger. Services are
intentionally thin: they perform validation and ownership checks, execute
domain logic and persist aggregates via repositories.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from passlib.context import CryptContext
import jwt
from sqlmodel import Session
from . import models, repositories
from .config import settings
from .errors import NotFound, OwnershipViolation, ValidationError
from .utils import scheduler
from .utils.streaks import effective_monthly_xp, effective_streak, month_bounds

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
LEARNED_HORIZON = timedelta(days=7)
RANKING_MAX_LIMIT = 100
RANKING_MAX_OFFSET = 1000


def validate_password(password: str) -> Optional[str]:
    """Return a complaint about `password`, or None if it is acceptable."""
    if len(password) < 8:
        return 'password must be at least 8 characters long'
    if not re.search(r'[A-Z]', password):
        return 'password must contain at least one uppercase letter'
    if not re.search(r'[a-z]', password):
        return 'password must contain at least one lowercase letter'
    if not re.search(r'[0-9]', password):
        return 'password must contain at least one number'
    return None


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password and an empty account.

        Returns the persisted `User` instance.
        """
        username = (username or '').strip()
        if not username:
            raise ValidationError('username required')
        problem = validate_password(password)
        if problem:
            raise ValidationError(problem)
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = models.utcnow() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _clean_variants(variants) -> List[str]:
    if not isinstance(variants, list) or any(not isinstance(v, str) for v in variants):
        raise ValidationError('variants must be a list of strings')
    cleaned = [v.strip() for v in variants if v.strip()]
    if not cleaned:
        raise ValidationError('at least one variant is required')
    return cleaned


class LearningItemService:
    """Owner-checked item operations and review scheduling."""
    def __init__(self, session: Session, clock: Callable[[], datetime] = models.utcnow):
        self.session = session
        self.item_repo = repositories.LearningItemRepository(session)
        self._clock = clock

    def create_item(self, owner_id: int, word: str, variants: List[str], image_url: Optional[str] = None) -> models.LearningItem:
        word = (word or '').strip()
        if not word:
            raise ValidationError('word required')
        item = models.LearningItem(
            owner_id=owner_id,
            word=word,
            variants=_clean_variants(variants),
            image_url=image_url,
            next_review_at=self._clock(),
        )
        return self.item_repo.create(item)

    def get_owned(self, item_id: int, owner_id: int) -> models.LearningItem:
        """Return the item if `owner_id` owns it.

        Raises `NotFound` for missing items and `OwnershipViolation` for
        items owned by someone else; the HTTP layer renders both alike.
        """
        item = self.item_repo.get(item_id)
        if item is None:
            raise NotFound(f'item not found: {item_id}')
        if item.owner_id != owner_id:
            raise OwnershipViolation(f'item {item_id} is not owned by user {owner_id}')
        return item

    def list_items(self, owner_id: int, due_only: bool = False) -> List[models.LearningItem]:
        """List the owner's items; read-only, never rotates variants."""
        due_before = self._clock() if due_only else None
        return self.item_repo.list_for_owner(owner_id, due_before=due_before)

    def update_item(self, item_id: int, owner_id: int, word: Optional[str] = None, variants: Optional[List[str]] = None, image_url: Optional[str] = None) -> models.LearningItem:
        """Edit content fields; scheduling fields are left untouched."""
        if word is None and variants is None and image_url is None:
            raise ValidationError('nothing to update')
        item = self.get_owned(item_id, owner_id)
        if word is not None:
            if not word.strip():
                raise ValidationError('word must not be empty')
            item.word = word.strip()
        if variants is not None:
            item.variants = _clean_variants(variants)
            # keep the pointer valid when the list shrinks
            item.current_variant_index = item.current_variant_index % len(item.variants)
        if image_url is not None:
            item.image_url = image_url
        return self.item_repo.save(item)

    def delete_item(self, item_id: int, owner_id: int) -> None:
        item = self.get_owned(item_id, owner_id)
        self.item_repo.delete(item)

    def review_item(self, item_id: int, owner_id: int, outcome) -> models.LearningItem:
        """Apply a review outcome to a freshly read item and persist it."""
        outcome = scheduler.ReviewOutcome.parse(outcome)
        item = self.get_owned(item_id, owner_id)
        state = scheduler.ScheduleState(
            ease_factor=item.ease_factor,
            current_interval_ms=item.current_interval_ms,
            consecutive_correct=item.consecutive_correct,
            last_reviewed_at=item.last_reviewed_at,
            next_review_at=item.next_review_at,
        )
        new_state = scheduler.review(state, outcome, self._clock())
        item.ease_factor = new_state.ease_factor
        item.current_interval_ms = new_state.current_interval_ms
        item.consecutive_correct = new_state.consecutive_correct
        item.last_reviewed_at = new_state.last_reviewed_at
        item.next_review_at = new_state.next_review_at
        return self.item_repo.save(item)

    def rotate_item(self, item_id: int, owner_id: int) -> models.LearningItem:
        """Advance the variant pointer; an explicit owner mutation only."""
        item = self.get_owned(item_id, owner_id)
        item.current_variant_index = scheduler.rotate(item.current_variant_index, len(item.variants or []))
        return self.item_repo.save(item)

    def dashboard_counts(self, owner_id: int) -> dict:
        """Return total, due and learned (due beyond a week) item counts."""
        now = self._clock()
        return {
            'total': self.item_repo.count_for_owner(owner_id),
            'due': self.item_repo.count_for_owner(owner_id, due_before=now),
            'learned': self.item_repo.count_for_owner(owner_id, due_after=now + LEARNED_HORIZON),
        }


class ProgressService:
    """Read-only projections of progress accounts.

    Nothing here writes; stale streaks and months are corrected for
    display only and stay stored until the next award.
    """
    def __init__(self, session: Session, clock: Callable[[], datetime] = models.utcnow):
        self.session = session
        self.account_repo = repositories.ProgressAccountRepository(session)
        self._clock = clock

    def _project(self, account: models.ProgressAccount, now: datetime) -> dict:
        return {
            'total_xp': account.total_xp,
            'monthly_xp': effective_monthly_xp(account.monthly_xp, account.monthly_xp_reset_at, now),
            'streak_count': effective_streak(account.streak_count, account.last_active_date, account.is_premium, now),
            'is_premium': account.is_premium,
        }

    def snapshot(self, user_id: int) -> dict:
        account = self.account_repo.get(user_id)
        if account is None:
            raise NotFound(f'progress account not found: {user_id}')
        now = self._clock()
        out = self._project(account, now)
        last_active = models.as_utc(account.last_active_date)
        out['last_active_date'] = last_active.isoformat() if last_active else None
        return out

    def ranking(self, limit: int = 50, offset: int = 0) -> List[dict]:
        """Rank users by effective monthly XP, then total XP."""
        limit = min(max(int(limit), 1), RANKING_MAX_LIMIT)
        offset = min(max(int(offset), 0), RANKING_MAX_OFFSET)
        now = self._clock()
        rows = []
        for user, account in self.account_repo.list_all():
            projected = self._project(account, now)
            rows.append({
                'user_id': user.id,
                'username': user.username,
                'total_xp': projected['total_xp'],
                'monthly_xp': projected['monthly_xp'],
                'streak_count': projected['streak_count'],
            })
        rows.sort(key=lambda r: (-r['monthly_xp'], -r['total_xp'], r['user_id']))
        for i, r in enumerate(rows):
            r['rank'] = i + 1
        return rows[offset:offset + limit]

    def profile(self, user_id: int) -> dict:
        """Account snapshot plus the user's monthly rank."""
        out = self.snapshot(user_id)
        month_start, month_end = month_bounds(self._clock())
        above = self.account_repo.count_ahead(user_id, out['monthly_xp'], month_start, month_end)
        out['rank'] = above + 1
        return out
