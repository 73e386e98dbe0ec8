"""SQLModel data models.

This module defines the engine's database tables using SQLModel. The
store is the only authority for items and accounts; nothing here is
cached in process.
"""

from typing import List, Optional
from sqlalchemy import BigInteger, Column, JSON
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return `value` as an aware UTC datetime.

    SQLite hands back naive datetimes; everything is written in UTC so a
    naive value is interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class LearningItem(SQLModel, table=True):
    """A flashcard-like unit owned by exactly one user.

    `variants` are the context sentences shown for the word and
    `current_variant_index` is a cyclic pointer into them. The scheduling
    fields (`ease_factor`, `current_interval_ms`, `consecutive_correct`,
    `last_reviewed_at`, `next_review_at`) change only through review
    outcomes.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key='user.id', index=True)
    word: str
    image_url: Optional[str] = None
    variants: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    current_variant_index: int = 0
    ease_factor: float = 2.5
    current_interval_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    consecutive_correct: int = 0
    last_reviewed_at: Optional[datetime] = None
    next_review_at: datetime = Field(default_factory=utcnow, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class ProgressAccount(SQLModel, table=True):
    """XP and streak ledger row, one per user.

    Rows are written only inside `ProgressLedger.award_xp`; read-only
    surfaces project effective values from a snapshot instead.
    """
    user_id: int = Field(foreign_key='user.id', primary_key=True)
    total_xp: int = 0
    monthly_xp: int = 0
    monthly_xp_reset_at: datetime = Field(default_factory=utcnow)
    streak_count: int = 0
    last_active_date: Optional[datetime] = None
    is_premium: bool = False
