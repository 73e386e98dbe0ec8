"""In-memory fixed-window rate limiter for endpoint protection.

Window state lives in a process-local store. A horizontally scaled
deployment needs a shared `RateLimitStore` implementation; callers only
talk to `FixedWindowRateLimiter`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, NamedTuple, Optional, Protocol

from ..errors import ValidationError

_LOGGER = logging.getLogger("progress_engine.ratelimit")

UNKNOWN_CLIENT = "unknown"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateWindow:
    count: int
    reset_at: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms

    def retry_after_seconds(self, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        return max(1, -(-(self.reset_at - now_ms) // 1000))


class RatePolicy(NamedTuple):
    max_requests: int
    window_ms: int


RATE_POLICIES = {
    "register": RatePolicy(5, 15 * 60 * 1000),
    "login": RatePolicy(10, 15 * 60 * 1000),
    "review": RatePolicy(120, 60 * 1000),
    "rotate": RatePolicy(120, 60 * 1000),
    "item_write": RatePolicy(30, 60 * 1000),
    "award": RatePolicy(30, 60 * 1000),
}


def get_policy(name: str) -> RatePolicy:
    try:
        return RATE_POLICIES[name]
    except KeyError:
        raise ValidationError(f"unknown rate limit policy: {name!r}") from None


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[RateWindow]:
        ...

    def increment_with_expiry(self, key: str, ceiling: int, window_ms: int, now_ms: int) -> tuple[RateWindow, bool]:
        """Count one hit for `key`, opening a new window when expired.

        Returns a snapshot of the window and whether the hit was counted;
        a hit is not counted once `ceiling` is reached.
        """
        ...

    def sweep(self, now_ms: int) -> int:
        ...


class InMemoryRateLimitStore:
    """Key to window map guarded by a lock."""

    def __init__(self):
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateWindow]:
        with self._lock:
            window = self._windows.get(key)
            return RateWindow(window.count, window.reset_at) if window else None

    def increment_with_expiry(self, key: str, ceiling: int, window_ms: int, now_ms: int) -> tuple[RateWindow, bool]:
        with self._lock:
            window = self._windows.get(key)
            if window is None or now_ms > window.reset_at:
                window = RateWindow(count=1, reset_at=now_ms + window_ms)
                self._windows[key] = window
                return RateWindow(window.count, window.reset_at), True
            if window.count >= ceiling:
                return RateWindow(window.count, window.reset_at), False
            window.count += 1
            return RateWindow(window.count, window.reset_at), True

    def sweep(self, now_ms: int) -> int:
        """Drop expired windows and return how many were removed."""
        with self._lock:
            expired = [k for k, w in self._windows.items() if now_ms > w.reset_at]
            for k in expired:
                del self._windows[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class FixedWindowRateLimiter:
    """Fixed-window limiter per key (not sliding)."""

    def __init__(self, store: Optional[RateLimitStore] = None, clock: Callable[[], int] = _now_ms):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        if max_requests <= 0:
            raise ValidationError("max_requests must be > 0")
        if window_ms <= 0:
            raise ValidationError("window_ms must be > 0")
        window, counted = self.store.increment_with_expiry(key, max_requests, window_ms, self._clock())
        if not counted:
            return RateLimitResult(allowed=False, remaining=0, reset_at=window.reset_at)
        return RateLimitResult(allowed=True, remaining=max_requests - window.count, reset_at=window.reset_at)

    def check_policy(self, key: str, policy_name: str) -> RateLimitResult:
        policy = get_policy(policy_name)
        return self.check(f"{policy_name}:{key}", policy.max_requests, policy.window_ms)

    def sweep(self) -> int:
        removed = self.store.sweep(self._clock())
        if removed:
            _LOGGER.debug("rate_limit_sweep removed=%d", removed)
        return removed

    def start_sweeper(self, interval_seconds: float) -> None:
        """Purge expired windows every `interval_seconds` on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval_seconds):
                try:
                    self.sweep()
                except Exception:
                    _LOGGER.exception("rate_limit_sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="rate-limit-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1)
            self._sweeper = None


def client_key(headers: Mapping[str, str]) -> str:
    """Derive the caller identity used as a rate-limit key.

    `X-Real-IP` is set by the trusted reverse proxy and cannot be forged by
    the caller, so it wins over the client-suppliable `X-Forwarded-For`.
    """
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return UNKNOWN_CLIENT
