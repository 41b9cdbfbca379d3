"""
Rate Limiter Module
Token bucket throttling of outbound calls to the external platform API.

The bucket holds up to ``burst_limit`` tokens and refills at
``rate_limit_per_minute / 60`` tokens per second. Refill is computed lazily
from elapsed time on every call. Bucket state lives in a pluggable store so
that every orchestrator run in the process (or, with the SQL store, every
process sharing the database) draws from the same budget.
"""

import math
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from activity_sync.database.models import RateLimitState
from activity_sync.sync.errors import RateLimitTimeout
from activity_sync.utils.helpers import format_datetime, utcnow
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import record_rate_limit

logger = get_logger(__name__)

DEFAULT_SCOPE = 'platform-api'
MAX_CAS_ATTEMPTS = 50


@dataclass(frozen=True)
class BucketState:
    """Snapshot of a token bucket."""
    tokens: float
    last_refill_at: float


# ============================================
# BUCKET STORES
# ============================================

class InMemoryBucketStore:
    """Process-local bucket store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, BucketState] = {}

    def load(self, scope: str, capacity: float, now: float) -> BucketState:
        with self._lock:
            state = self._states.get(scope)
            if state is None:
                state = BucketState(tokens=float(capacity), last_refill_at=now)
                self._states[scope] = state
            return state

    def compare_and_set(self, scope: str, expected: BucketState, new: BucketState) -> bool:
        with self._lock:
            if self._states.get(scope) != expected:
                return False
            self._states[scope] = new
            return True


class SqlBucketStore:
    """Bucket store backed by the ``rate_limit_states`` table."""

    def __init__(self, db):
        self.db = db

    def load(self, scope: str, capacity: float, now: float) -> BucketState:
        with self.db.session_scope() as session:
            row = session.get(RateLimitState, scope)
            if row is not None:
                return BucketState(tokens=row.tokens, last_refill_at=row.last_refill_at)

        try:
            with self.db.session_scope() as session:
                session.add(RateLimitState(scope=scope, tokens=float(capacity), last_refill_at=now))
            return BucketState(tokens=float(capacity), last_refill_at=now)
        except IntegrityError:
            # Another caller created the row first
            with self.db.session_scope() as session:
                row = session.get(RateLimitState, scope)
                return BucketState(tokens=row.tokens, last_refill_at=row.last_refill_at)

    def compare_and_set(self, scope: str, expected: BucketState, new: BucketState) -> bool:
        with self.db.session_scope() as session:
            result = session.execute(
                update(RateLimitState)
                .where(
                    RateLimitState.scope == scope,
                    RateLimitState.tokens == expected.tokens,
                    RateLimitState.last_refill_at == expected.last_refill_at
                )
                .values(tokens=new.tokens, last_refill_at=new.last_refill_at)
            )
            return result.rowcount == 1


# ============================================
# TOKEN BUCKET
# ============================================

class TokenBucketRateLimiter:
    """Token bucket rate limiter with atomic consume."""

    def __init__(
        self,
        rate_limit_per_minute: int,
        burst_limit: int,
        store=None,
        scope: str = DEFAULT_SCOPE,
        max_wait_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the limiter.

        Args:
            rate_limit_per_minute: Sustained budget (tokens per minute)
            burst_limit: Bucket capacity
            store: Bucket store; defaults to a process-local store
            scope: Key of the external API scope the bucket covers
            max_wait_seconds: Upper bound for ``acquire`` waits
            clock: Time source in seconds
            sleep: Sleep function used while waiting for tokens
        """
        self.store = store or InMemoryBucketStore()
        self.scope = scope
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self.configure(rate_limit_per_minute, burst_limit)

    def configure(self, rate_limit_per_minute: int, burst_limit: int) -> None:
        """Change the sustained rate and burst capacity in place."""
        if rate_limit_per_minute <= 0:
            raise ValueError("rate_limit_per_minute must be positive")
        if burst_limit < 1:
            raise ValueError("burst_limit must be at least 1")

        self.rate_limit_per_minute = rate_limit_per_minute
        self.capacity = float(burst_limit)
        self.refill_per_second = rate_limit_per_minute / 60.0
        logger.info(f"Rate limiter configured: {rate_limit_per_minute}/min, burst {burst_limit}")

    def _refilled(self, state: BucketState, now: float) -> BucketState:
        elapsed = max(0.0, now - state.last_refill_at)
        tokens = min(self.capacity, state.tokens + elapsed * self.refill_per_second)
        return BucketState(tokens=tokens, last_refill_at=max(now, state.last_refill_at))

    def try_consume(self, tokens: int = 1) -> bool:
        """
        Take tokens from the bucket if enough are available.

        Args:
            tokens: Number of tokens to take

        Returns:
            True if the tokens were granted
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            now = self._clock()
            current = self.store.load(self.scope, self.capacity, now)
            refilled = self._refilled(current, now)

            if refilled.tokens < tokens:
                return False

            consumed = BucketState(tokens=refilled.tokens - tokens, last_refill_at=refilled.last_refill_at)
            if self.store.compare_and_set(self.scope, current, consumed):
                return True

        logger.warning(f"Rate limiter contention on scope '{self.scope}', denying request")
        return False

    def seconds_until_available(self, tokens: int = 1) -> float:
        """Seconds until ``tokens`` could be granted, assuming no other consumers."""
        now = self._clock()
        state = self._refilled(self.store.load(self.scope, self.capacity, now), now)
        deficit = tokens - state.tokens
        if deficit <= 0:
            return 0.0
        return deficit / self.refill_per_second

    def acquire(self, tokens: int = 1, max_wait_seconds: Optional[float] = None) -> float:
        """
        Block until tokens are granted.

        Args:
            tokens: Number of tokens to take
            max_wait_seconds: Override of the configured max wait

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitTimeout: If the tokens cannot be granted within the max wait
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity:.0f}")

        max_wait = self.max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        waited = 0.0

        while not self.try_consume(tokens):
            wait = max(self.seconds_until_available(tokens), 0.01)
            if waited + wait > max_wait:
                record_rate_limit('timeout')
                raise RateLimitTimeout(waited + wait, max_wait)

            logger.debug(f"Rate limited, waiting {wait:.2f}s for {tokens} token(s)")
            self._sleep(wait)
            waited += wait

        if waited:
            record_rate_limit('local', waited)
        return waited

    def status(self) -> Dict:
        """
        Current bucket status.

        Returns:
            Dict with remaining whole tokens and the time the bucket is full again
        """
        now = self._clock()
        state = self._refilled(self.store.load(self.scope, self.capacity, now), now)
        seconds_to_full = (self.capacity - state.tokens) / self.refill_per_second

        return {
            'scope': self.scope,
            'remaining': int(math.floor(state.tokens)),
            'resetAt': format_datetime(utcnow() + timedelta(seconds=seconds_to_full)),
            'burstLimit': int(self.capacity),
            'rateLimitPerMinute': self.rate_limit_per_minute
        }
