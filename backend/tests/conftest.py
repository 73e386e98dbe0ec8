import os
import uuid
from pathlib import Path

import pytest
from sqlmodel import Session

# Point the app at a throwaway database before anything imports it.
TEST_DB = Path(__file__).resolve().parents[1] / "test.db"
if TEST_DB.exists():
    TEST_DB.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from progress_engine import models  # noqa: E402
from progress_engine.database import create_db_and_tables, make_engine  # noqa: E402
from progress_engine.utils.rate_limit import FixedWindowRateLimiter  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_rate_limiter(monkeypatch):
    """Give every test its own rate-limit windows."""
    import progress_engine.main

    limiter = FixedWindowRateLimiter()
    monkeypatch.setattr(progress_engine.main, "_rate_limiter", limiter)
    return limiter


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'engine.db'}")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


def make_user(engine, **account_fields) -> int:
    """Insert a user with a progress account and return the user id."""
    with Session(engine) as session:
        user = models.User(username=f"user-{uuid.uuid4().hex[:8]}", password_hash="x")
        session.add(user)
        session.flush()
        user_id = user.id
        session.add(models.ProgressAccount(user_id=user_id, **account_fields))
        session.commit()
    return user_id


def load_account(engine, user_id: int) -> models.ProgressAccount:
    with Session(engine) as session:
        account = session.get(models.ProgressAccount, user_id)
        session.expunge(account)
        return account
