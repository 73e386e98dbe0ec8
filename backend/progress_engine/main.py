"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the progress engine.
Controllers are intentionally thin: they apply a rate-limit policy,
delegate to services or the ledger, and return JSON responses.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- POST /items, GET /items
- GET/PATCH/DELETE /items/{item_id}
- POST /items/{item_id}/review
- POST /items/{item_id}/rotate
- POST /xp/award
- GET /ratecheck
- GET /dashboard
- GET /profile
- GET /ranking
- GET /health
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import json
import logging
import time
import uuid
from .database import engine, create_db_and_tables, get_session
from . import services, models
from .auth import get_current_user
from .config import settings
from .errors import DuplicateUsername, LedgerContention, NotFound, OwnershipViolation, StoreUnavailable, ValidationError
from .ledger import ProgressLedger, RewardReason
from .schemas import AwardIn, ItemCreateIn, ItemUpdateIn, RegisterIn, ReviewIn
from .utils.rate_limit import FixedWindowRateLimiter, client_key
from .utils.scheduler import ReviewOutcome

logger = logging.getLogger("progress_engine.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

_rate_limiter = FixedWindowRateLimiter()
_ledger = ProgressLedger(engine, max_retries=settings.LEDGER_MAX_RETRIES)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _rate_limiter.start_sweeper(settings.RATE_LIMIT_SWEEP_SECONDS)
    try:
        yield
    finally:
        _rate_limiter.stop_sweeper()


app = FastAPI(title="Progress Engine API", lifespan=lifespan)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": client_key(request.headers),
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": client_key(request.headers),
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(NotFound)
@app.exception_handler(OwnershipViolation)
async def not_found_handler(request: Request, exc: Exception):
    # ownership violations look exactly like missing rows
    return JSONResponse(status_code=404, content={"detail": "not found"})


@app.exception_handler(DuplicateUsername)
async def duplicate_handler(request: Request, exc: DuplicateUsername):
    return JSONResponse(status_code=409, content={"detail": "username taken"})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(LedgerContention)
async def contention_handler(request: Request, exc: LedgerContention):
    return JSONResponse(status_code=503, content={"detail": "try again"}, headers={"Retry-After": "1"})


@app.exception_handler(StoreUnavailable)
async def store_handler(request: Request, exc: StoreUnavailable):
    logger.error("store_unavailable path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal error"})


def _rate_limit_headers(result) -> dict:
    return {
        "Retry-After": str(result.retry_after_seconds()),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def _enforce_rate_limit(request: Request, policy: str, subject: str | None = None) -> None:
    key = subject or client_key(request.headers)
    result = _rate_limiter.check_policy(key, policy)
    if not result.allowed:
        logger.info("rate_limited %s", json.dumps({"policy": policy, "key": key, "reset_at": result.reset_at}))
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {result.retry_after_seconds()}s",
            headers=_rate_limit_headers(result),
        )


def _award_after_write(user_id: int, reason: RewardReason):
    """Award `reason` once the item write has committed.

    The item change is already durable, so a ledger failure is reported as
    `None` instead of an error a client would answer by retrying the write.
    """
    try:
        return asdict(_ledger.award_for(user_id, reason))
    except (LedgerContention, StoreUnavailable) as exc:
        logger.warning(
            "award_skipped %s",
            json.dumps({"user_id": user_id, "reason": reason.value, "error": type(exc).__name__}),
            exc_info=isinstance(exc, StoreUnavailable),
        )
        return None


def _iso(value):
    value = models.as_utc(value)
    return value.isoformat() if value else None


def _item_out(item: models.LearningItem) -> dict:
    return {
        'id': item.id,
        'word': item.word,
        'image_url': item.image_url,
        'variants': list(item.variants or []),
        'current_variant_index': item.current_variant_index,
        'ease_factor': item.ease_factor,
        'current_interval_ms': int(item.current_interval_ms or 0),
        'consecutive_correct': item.consecutive_correct,
        'last_reviewed_at': _iso(item.last_reviewed_at),
        'next_review_at': _iso(item.next_review_at),
    }


@app.post('/auth/register')
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_session)):
    """Register a new user and open their progress account."""
    _enforce_rate_limit(request, 'register')
    auth = services.AuthService(db)
    if auth.user_repo.get_by_username(payload.username.strip()):
        raise HTTPException(status_code=409, detail='username taken')
    user = auth.register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/login')
def login(payload: RegisterIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token."""
    _enforce_rate_limit(request, 'login')
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.post('/items', status_code=201)
def create_item(payload: ItemCreateIn, request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Create a learning item; creating one earns the `item_created` reward."""
    _enforce_rate_limit(request, 'item_write', f'user:{user.id}')
    item = services.LearningItemService(db).create_item(user.id, payload.word, payload.variants, payload.image_url)
    xp = _award_after_write(user.id, RewardReason.ITEM_CREATED)
    return {'item': _item_out(item), 'xp': xp}


@app.get('/items')
def list_items(due_only: bool = False, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """List the caller's items ordered by next review time.

    Listing is read-only: it never advances `current_variant_index`.
    """
    items = services.LearningItemService(db).list_items(user.id, due_only=due_only)
    return {'items': [_item_out(i) for i in items]}


@app.get('/items/{item_id}')
def get_item(item_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return {'item': _item_out(services.LearningItemService(db).get_owned(item_id, user.id))}


@app.patch('/items/{item_id}')
def update_item(item_id: int, payload: ItemUpdateIn, request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Edit the word, variants or image of an owned item."""
    _enforce_rate_limit(request, 'item_write', f'user:{user.id}')
    item = services.LearningItemService(db).update_item(
        item_id, user.id, word=payload.word, variants=payload.variants, image_url=payload.image_url
    )
    return {'item': _item_out(item)}


@app.delete('/items/{item_id}', status_code=204)
def delete_item(item_id: int, request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    _enforce_rate_limit(request, 'item_write', f'user:{user.id}')
    services.LearningItemService(db).delete_item(item_id, user.id)
    return Response(status_code=204)


@app.post('/items/{item_id}/review')
def review_item(item_id: int, payload: ReviewIn, request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Record a review outcome and reschedule the item.

    A successful review also earns XP: the `review` reward, or
    `review_with_audio` when the audio was played. Failures earn nothing.
    """
    _enforce_rate_limit(request, 'review', f'user:{user.id}')
    item = services.LearningItemService(db).review_item(item_id, user.id, payload.outcome)
    xp = None
    if payload.outcome is ReviewOutcome.SUCCESS:
        reason = RewardReason.REVIEW_WITH_AUDIO if payload.audio_played else RewardReason.REVIEW
        xp = _award_after_write(user.id, reason)
    return {'item': _item_out(item), 'xp': xp}


@app.post('/items/{item_id}/rotate')
def rotate_item(item_id: int, request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Show the next context sentence of an owned item."""
    _enforce_rate_limit(request, 'rotate', f'user:{user.id}')
    item = services.LearningItemService(db).rotate_item(item_id, user.id)
    return {'item': _item_out(item)}


@app.post('/xp/award')
def award_xp(payload: AwardIn, request: Request, user: models.User = Depends(get_current_user)):
    """Award the fixed tariff amount for `reason` to the caller."""
    _enforce_rate_limit(request, 'award', f'user:{user.id}')
    return asdict(_ledger.award_for(user.id, payload.reason))


@app.get('/ratecheck')
def rate_check(policy: str, user: models.User = Depends(get_current_user)):
    """Count one request for the caller under the named policy.

    Checks live in their own `ratecheck:` namespace and never spend the
    budget of the routes that enforce the same policy.
    """
    result = _rate_limiter.check_policy(f'ratecheck:user:{user.id}', policy)
    body = {'allowed': result.allowed, 'remaining': result.remaining, 'reset_at': result.reset_at}
    if not result.allowed:
        return JSONResponse(status_code=429, content=body, headers=_rate_limit_headers(result))
    return body


@app.get('/dashboard')
def dashboard(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Item counts plus the display-safe streak and monthly XP."""
    counts = services.LearningItemService(db).dashboard_counts(user.id)
    progress = services.ProgressService(db).snapshot(user.id)
    return {
        'total_items': counts['total'],
        'due_items': counts['due'],
        'learned_items': counts['learned'],
        'streak_count': progress['streak_count'],
        'monthly_xp': progress['monthly_xp'],
        'total_xp': progress['total_xp'],
    }


@app.get('/profile')
def profile(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    out = services.ProgressService(db).profile(user.id)
    out['user_id'] = user.id
    out['username'] = user.username
    return out


@app.get('/ranking')
def ranking(limit: int = 50, offset: int = 0, db: Session = Depends(get_session)):
    """Public leaderboard by effective monthly XP."""
    return {'ranking': services.ProgressService(db).ranking(limit=limit, offset=offset)}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
