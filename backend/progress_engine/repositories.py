"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
learning items, progress accounts). Repositories return SQLModel objects
and perform commits/refreshes where appropriate. The ledger's atomic
update lives in `ProgressAccountRepository.apply_award` and never commits
on its own; the ledger owns that transaction.
"""

from datetime import datetime
from typing import List, Optional
from sqlmodel import Session, select
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from . import models
from .errors import DuplicateUsername


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user together with an empty progress account.

        Raises `DuplicateUsername` when the unique index rejects the name,
        e.g. when a concurrent signup won the race.
        """
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            raise DuplicateUsername(f"username taken: {user.username}") from None
        self.session.add(models.ProgressAccount(user_id=user.id))
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class LearningItemRepository:
    """CRUD operations for `LearningItem` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, item: models.LearningItem) -> models.LearningItem:
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def get(self, item_id: int) -> Optional[models.LearningItem]:
        """Fetch an item by id, bypassing any stale identity-map copy."""
        return self.session.get(models.LearningItem, item_id, populate_existing=True)

    def save(self, item: models.LearningItem) -> models.LearningItem:
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item: models.LearningItem) -> None:
        self.session.delete(item)
        self.session.commit()

    def list_for_owner(self, owner_id: int, due_before: Optional[datetime] = None) -> List[models.LearningItem]:
        """Return the owner's items ordered by next review time.

        When `due_before` is given only items due at or before it are returned.
        """
        stmt = select(models.LearningItem).where(models.LearningItem.owner_id == owner_id)
        if due_before is not None:
            stmt = stmt.where(models.LearningItem.next_review_at <= due_before)
        stmt = stmt.order_by(models.LearningItem.next_review_at, models.LearningItem.id)
        return self.session.exec(stmt).all()

    def count_for_owner(self, owner_id: int, due_before: Optional[datetime] = None, due_after: Optional[datetime] = None) -> int:
        stmt = select(func.count()).select_from(models.LearningItem).where(models.LearningItem.owner_id == owner_id)
        if due_before is not None:
            stmt = stmt.where(models.LearningItem.next_review_at <= due_before)
        if due_after is not None:
            stmt = stmt.where(models.LearningItem.next_review_at > due_after)
        return self.session.exec(stmt).one()


class ProgressAccountRepository:
    """Reads and atomic writes for `ProgressAccount` rows."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[models.ProgressAccount]:
        return self.session.get(models.ProgressAccount, user_id)

    def get_for_update(self, user_id: int) -> Optional[models.ProgressAccount]:
        """Read the account row, locking it where the dialect supports it."""
        stmt = (
            select(models.ProgressAccount)
            .where(models.ProgressAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def apply_award(self, user_id: int, amount: int, new_streak: int, now: datetime, new_month: bool) -> None:
        """Apply one award with SQL-side increments in a single UPDATE."""
        account = models.ProgressAccount
        values = {
            'total_xp': account.total_xp + amount,
            'streak_count': new_streak,
            'last_active_date': now,
        }
        if new_month:
            values['monthly_xp'] = amount
            values['monthly_xp_reset_at'] = now
        else:
            values['monthly_xp'] = account.monthly_xp + amount
        stmt = update(account).where(account.user_id == user_id).values(**values)
        self.session.exec(stmt)

    def read_counters(self, user_id: int) -> tuple[int, int, int]:
        """Return `(total_xp, monthly_xp, streak_count)` as stored right now."""
        account = models.ProgressAccount
        stmt = select(account.total_xp, account.monthly_xp, account.streak_count).where(account.user_id == user_id)
        row = self.session.exec(stmt).one()
        return row[0], row[1], row[2]

    def count_ahead(self, user_id: int, monthly_xp: int, month_start: datetime, month_end: datetime) -> int:
        """Count other accounts with more monthly XP in the given month.

        Accounts whose month is stale show 0 and can never be ahead.
        """
        account = models.ProgressAccount
        stmt = select(func.count()).select_from(account).where(
            account.user_id != user_id,
            account.monthly_xp > monthly_xp,
            account.monthly_xp_reset_at >= month_start,
            account.monthly_xp_reset_at < month_end,
        )
        return self.session.exec(stmt).one()

    def list_all(self) -> List[tuple[models.User, models.ProgressAccount]]:
        """Return every user with their account for ranking."""
        stmt = select(models.User, models.ProgressAccount).join(
            models.ProgressAccount, models.ProgressAccount.user_id == models.User.id
        )
        return self.session.exec(stmt).all()
