from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from progress_engine import models, services
from progress_engine.errors import DuplicateUsername, NotFound, OwnershipViolation, ValidationError

from conftest import make_user

NOW = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


def test_review_persists_new_schedule(engine, session):
    owner = make_user(engine)
    clock = Clock(NOW)
    svc = services.LearningItemService(session, clock=clock)
    item = svc.create_item(owner, "ephemeral", ["The moment was ephemeral."])
    assert item.current_interval_ms == 0
    assert item.ease_factor == 2.5

    item = svc.review_item(item.id, owner, "success")
    assert item.current_interval_ms == 900_000
    assert models.as_utc(item.next_review_at) == NOW + timedelta(minutes=15)

    clock.now = NOW + timedelta(minutes=16)
    item = svc.review_item(item.id, owner, "success")
    assert item.current_interval_ms == 2_340_000
    assert item.ease_factor == 2.7
    assert item.consecutive_correct == 2

    item = svc.review_item(item.id, owner, "failure")
    assert item.current_interval_ms == 0
    assert item.consecutive_correct == 0
    assert models.as_utc(item.next_review_at) == clock.now


def test_foreign_items_are_rejected(engine, session):
    owner = make_user(engine)
    intruder = make_user(engine)
    svc = services.LearningItemService(session, clock=Clock(NOW))
    item = svc.create_item(owner, "word", ["a", "b"])
    with pytest.raises(OwnershipViolation):
        svc.review_item(item.id, intruder, "success")
    with pytest.raises(OwnershipViolation):
        svc.rotate_item(item.id, intruder)
    with pytest.raises(OwnershipViolation):
        svc.delete_item(item.id, intruder)
    with pytest.raises(NotFound):
        svc.get_owned(999_999, owner)
    assert svc.get_owned(item.id, owner).current_variant_index == 0


def test_rotate_cycles_without_touching_schedule(engine, session):
    owner = make_user(engine)
    svc = services.LearningItemService(session, clock=Clock(NOW))
    item = svc.create_item(owner, "word", ["a", "b", "c"])
    item = svc.review_item(item.id, owner, "success")
    before = (item.ease_factor, item.current_interval_ms, item.next_review_at)
    indexes = [svc.rotate_item(item.id, owner).current_variant_index for _ in range(3)]
    assert indexes == [1, 2, 0]
    item = svc.get_owned(item.id, owner)
    assert (item.ease_factor, item.current_interval_ms, item.next_review_at) == before


def test_rotate_rejects_item_without_variants(engine, session):
    owner = make_user(engine)
    item = models.LearningItem(owner_id=owner, word="bare", variants=[])
    session.add(item)
    session.commit()
    with pytest.raises(ValidationError):
        services.LearningItemService(session).rotate_item(item.id, owner)


def test_listing_is_read_only(engine, session):
    owner = make_user(engine)
    clock = Clock(NOW)
    svc = services.LearningItemService(session, clock=clock)
    first = svc.create_item(owner, "one", ["a", "b"])
    second = svc.create_item(owner, "two", ["c", "d"])
    svc.review_item(first.id, owner, "success")
    for _ in range(3):
        listed = svc.list_items(owner)
    assert [i.current_variant_index for i in listed] == [0, 0]
    # ordered by next review: the reviewed item moved to the back
    assert [i.id for i in listed] == [second.id, first.id]
    assert [i.id for i in svc.list_items(owner, due_only=True)] == [second.id]


def test_create_and_update_validation(engine, session):
    owner = make_user(engine)
    svc = services.LearningItemService(session, clock=Clock(NOW))
    with pytest.raises(ValidationError):
        svc.create_item(owner, "word", [])
    with pytest.raises(ValidationError):
        svc.create_item(owner, "  ", ["a"])
    item = svc.create_item(owner, "word", ["a", "b", "c"])
    svc.rotate_item(item.id, owner)
    svc.rotate_item(item.id, owner)
    with pytest.raises(ValidationError):
        svc.update_item(item.id, owner)
    with pytest.raises(ValidationError):
        svc.update_item(item.id, owner, variants=["  "])
    updated = svc.update_item(item.id, owner, variants=["x", "y"])
    assert updated.variants == ["x", "y"]
    assert updated.current_variant_index == 0


def test_dashboard_counts(engine, session):
    owner = make_user(engine)
    clock = Clock(NOW)
    svc = services.LearningItemService(session, clock=clock)
    a = svc.create_item(owner, "a", ["a"])
    svc.create_item(owner, "b", ["b"])
    item = svc.get_owned(a.id, owner)
    item.current_interval_ms = 10 * 24 * 3600 * 1000
    session.add(item)
    session.commit()
    svc.review_item(a.id, owner, "success")
    assert svc.dashboard_counts(owner) == {'total': 2, 'due': 1, 'learned': 1}


def test_progress_projection_does_not_write(engine, session):
    stale = NOW - timedelta(days=3)
    user_id = make_user(engine, streak_count=9, last_active_date=stale, monthly_xp=120, total_xp=400,
                        monthly_xp_reset_at=NOW - timedelta(days=40))
    svc = services.ProgressService(session, clock=Clock(NOW))
    snap = svc.snapshot(user_id)
    assert snap['streak_count'] == 0
    assert snap['monthly_xp'] == 0
    assert snap['total_xp'] == 400
    stored = session.get(models.ProgressAccount, user_id)
    assert stored.streak_count == 9
    assert stored.monthly_xp == 120


def test_ranking_orders_by_effective_monthly_xp(engine, session):
    leader = make_user(engine, monthly_xp=300, total_xp=300, monthly_xp_reset_at=NOW)
    stale = make_user(engine, monthly_xp=900, total_xp=900, monthly_xp_reset_at=NOW - timedelta(days=40))
    runner_up = make_user(engine, monthly_xp=100, total_xp=1000, monthly_xp_reset_at=NOW)
    svc = services.ProgressService(session, clock=Clock(NOW))
    ranking = svc.ranking(limit=10)
    assert [r['user_id'] for r in ranking] == [leader, runner_up, stale]
    assert [r['rank'] for r in ranking] == [1, 2, 3]
    assert ranking[2]['monthly_xp'] == 0
    assert svc.profile(runner_up)['rank'] == 2
    assert svc.ranking(limit=1, offset=1)[0]['user_id'] == runner_up


def test_password_rules():
    assert services.validate_password("Ab1") is not None
    assert services.validate_password("abcdefg1") is not None
    assert services.validate_password("ABCDEFG1") is not None
    assert services.validate_password("Abcdefgh") is not None
    assert services.validate_password("StrongP4ss") is None


def test_register_duplicate_username_is_rejected_by_index(engine, session):
    auth = services.AuthService(session)
    first = auth.register("twin", "StrongP4ss")
    with pytest.raises(DuplicateUsername):
        auth.register("twin", "StrongP4ss")
    # the session was rolled back and stays usable
    assert auth.register("twin-2", "StrongP4ss").id != first.id
    assert session.get(models.ProgressAccount, first.id) is not None


def test_profile_rank_ignores_stale_months_and_self(engine, session):
    me = make_user(engine, monthly_xp=200, total_xp=200, monthly_xp_reset_at=NOW)
    make_user(engine, monthly_xp=500, total_xp=500, monthly_xp_reset_at=NOW - timedelta(days=2))
    make_user(engine, monthly_xp=200, total_xp=900, monthly_xp_reset_at=NOW)
    make_user(engine, monthly_xp=900, total_xp=900, monthly_xp_reset_at=NOW - timedelta(days=40))
    make_user(engine, monthly_xp=900, total_xp=900, monthly_xp_reset_at=NOW + timedelta(days=30))
    svc = services.ProgressService(session, clock=Clock(NOW))
    assert svc.profile(me)['rank'] == 2
