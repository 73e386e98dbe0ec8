"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from .ledger import RewardReason
from .utils.scheduler import ReviewOutcome


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class ItemCreateIn(BaseModel):
    """Request body for creating a learning item."""
    word: str
    variants: List[str] = Field(min_length=1)
    image_url: Optional[str] = None


class ItemUpdateIn(BaseModel):
    """Partial content edit; scheduling fields cannot be set by clients."""
    word: Optional[str] = None
    variants: Optional[List[str]] = None
    image_url: Optional[str] = None


class ReviewIn(BaseModel):
    """A review outcome; `audio_played` selects the higher reward."""
    outcome: ReviewOutcome
    audio_played: bool = False


class AwardIn(BaseModel):
    """Reward request naming a reason from the fixed tariff, never an amount."""
    reason: RewardReason
