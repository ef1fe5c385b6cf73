"""
core/rate_limit.py
------------------
Sliding-window rate limiting per (tenant, operation, principal).

Key format:
    <tenant | "no-tenant">:<operation>:user:<user id>
    <tenant | "no-tenant">:<operation>:ip:<client address>

Each key holds the timestamps of its accepted requests inside the window.
The map is process-wide and shared by concurrent requests, so every key
is guarded by its own lock (same scheme as the connection registry).
Keys whose window has emptied are evicted by a periodic sweep.

Usage on a route:

    @router.get("/", dependencies=[Depends(RateLimit("products.list_products"))])
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Annotated, Callable, Deque, Dict, Optional

from fastapi import Depends, HTTPException, Request, Response, status

from commerce.core.config import settings
from commerce.core.logging import get_logger
from commerce.dependencies import get_current_user
from commerce.models.user import User
from commerce.tenancy.router import bind_tenant

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


def rate_limit_key(
    tenant_code: Optional[str],
    operation: str,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> str:
    principal = f"user:{user_id}" if user_id else f"ip:{client_ip or 'unknown'}"
    return f"{tenant_code or 'no-tenant'}:{operation}:{principal}"


class SlidingWindowRateLimiter:

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._hits: Dict[str, Deque[float]] = {}
        # key -> moment its newest accepted hit leaves the window
        self._idle_at: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def hit(self, key: str, max_requests: int, window_seconds: float) -> RateLimitDecision:
        """Record a request for key if it fits in the window."""
        now = self._clock()
        self._sweep(now)
        while True:
            lock = self._lock_for(key)
            with lock:
                if self._locks.get(key) is not lock:
                    # Evicted while we waited; start over with the new lock
                    continue
                hits = self._hits.setdefault(key, deque())
                cutoff = now - window_seconds
                while hits and hits[0] <= cutoff:
                    hits.popleft()

                allowed = len(hits) < max_requests
                if allowed:
                    hits.append(now)
                self._idle_at[key] = (hits[-1] if hits else now) + window_seconds

                reset = math.ceil(hits[0] + window_seconds - now) if hits else 0
                return RateLimitDecision(
                    allowed=allowed,
                    limit=max_requests,
                    remaining=max(0, max_requests - len(hits)),
                    reset_seconds=max(0, reset),
                )

    def _sweep(self, now: float) -> None:
        """Forget keys with no hit left in their window, at most once per interval."""
        with self._locks_guard:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
            idle = [key for key, idle_at in self._idle_at.items() if idle_at <= now]

        for key in idle:
            lock = self._locks.get(key)
            if lock is None:
                continue
            with lock:
                if self._idle_at.get(key, now + 1) > now:
                    continue
                self._hits.pop(key, None)
                self._idle_at.pop(key, None)
                with self._locks_guard:
                    self._locks.pop(key, None)
        if idle:
            logger.debug("Rate limit keys evicted", count=len(idle))

    def reset(self) -> None:
        with self._locks_guard:
            self._hits.clear()
            self._idle_at.clear()
            self._locks.clear()


_limiter = SlidingWindowRateLimiter()


def get_rate_limiter() -> SlidingWindowRateLimiter:
    return _limiter


class RateLimit:
    """Route dependency enforcing a sliding-window limit for one operation."""

    def __init__(
        self,
        operation: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        key_by_user: bool = True,
    ) -> None:
        self.operation = operation
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_by_user = key_by_user

    async def __call__(
        self,
        request: Request,
        response: Response,
        current_user: Annotated[User, Depends(get_current_user)],
        tenant_code: Annotated[Optional[str], Depends(bind_tenant)],
        limiter: Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)],
    ) -> None:
        key = rate_limit_key(
            tenant_code,
            self.operation,
            user_id=current_user.id if self.key_by_user else None,
            client_ip=request.client.host if request.client else None,
        )
        decision = limiter.hit(
            key,
            self.max_requests or settings.RATE_LIMIT_MAX_REQUESTS,
            self.window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        if not decision.allowed:
            logger.warning("Rate limit exceeded", key=key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers=decision.headers,
            )
        response.headers.update(decision.headers)
