"""
ratelimit/limiter.py -- Per-identifier, per-action rate limiting with lockout.

check_rate_limit() is the decision: it consumes one admission for the
(identifier, action) key and answers allowed/denied. record_attempt() is the
audit trail: it writes an AuthAttempt row and nothing else. The two are
separate calls so an audit failure can never change a decision.

Algorithms (selected per action by its RateLimitPolicy):

  fixed_window    epoch-aligned windows of window_minutes. The check that
                  would exceed max_attempts starts a lockout.
  sliding_window  admissions inside the trailing window_minutes are counted;
                  older ones are discarded on every check.
  token_bucket    bucket of burst_limit tokens, refilled continuously at
                  refill_rate per window_minutes. Empty bucket = deny until
                  the next token arrives. Never locks.

Concurrency:
  Every check for one key runs under its striped threading.Lock and inside one
  database transaction, so the increment and the threshold comparison cannot
  interleave with another check for the same key. The fixed-window increment
  is additionally a conditional UPDATE (attempts < max), which holds across
  processes sharing the database.

Lockout expiry starts the key afresh (counter and hits cleared). When the
guarded action succeeds the caller hands its admission back with release(),
so only failures accumulate toward a lockout. release() never lifts a lock
and never clears other attempts; only time or clear_rate_limit() does.
record_attempt() never touches counters.

Failure modes:
  check_rate_limit() fails closed: storage errors propagate and the caller
  must deny. record_attempt() fails open: errors are logged and swallowed.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from datetime import datetime

from auth.tokens import from_epoch, to_epoch, utcnow
from ratelimit.models import (
    Algorithm,
    AuthAttempt,
    RateLimitPolicy,
    RateLimitRecord,
    RateLimitResult,
    RateLimitStats,
)
from ratelimit.store import RateLimitStore

logger = logging.getLogger("authcore.ratelimit")

DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    "login": RateLimitPolicy(max_attempts=5, window_minutes=15, lockout_minutes=15, algorithm=Algorithm.SLIDING_WINDOW),
    "signup": RateLimitPolicy(max_attempts=3, window_minutes=60, lockout_minutes=60, algorithm=Algorithm.FIXED_WINDOW),
    "password_reset": RateLimitPolicy(
        max_attempts=3, window_minutes=60, lockout_minutes=60, algorithm=Algorithm.FIXED_WINDOW
    ),
    "email_verification": RateLimitPolicy(
        max_attempts=5, window_minutes=60, lockout_minutes=30, algorithm=Algorithm.FIXED_WINDOW
    ),
    "api": RateLimitPolicy(
        max_attempts=100,
        window_minutes=1,
        lockout_minutes=0,
        algorithm=Algorithm.TOKEN_BUCKET,
        burst_limit=20,
        refill_rate=100,
    ),
    "upload": RateLimitPolicy(
        max_attempts=10, window_minutes=60, lockout_minutes=10, algorithm=Algorithm.SLIDING_WINDOW
    ),
}

# Audit rows older than this are dropped by cleanup_expired_state().
AUDIT_RETENTION_DAYS = 30

# Counter rows for actions that no longer have a policy are dropped after a day idle.
_ORPHAN_IDLE_SECONDS = 24 * 60 * 60

# Keys share a fixed pool of locks, so memory does not grow with the number of
# identifiers ever seen. Two keys on one stripe merely serialize.
LOCK_STRIPES = 256


def _retry_after(seconds: float) -> int:
    return max(1, math.ceil(seconds))


class RateLimiter:
    """Thread-safe rate limiter over a RateLimitStore.

    Usage:
        limiter = RateLimiter(RateLimitStore(engine))
        result = limiter.check_rate_limit("alice@example.com", "login", client_ip)
        if not result.allowed:
            ...  # 429 with Retry-After: result.retry_after
        ok = do_sign_in()
        limiter.record_attempt("alice@example.com", "login", ok, client_ip)
        if ok:
            limiter.release("alice@example.com", "login")
    """

    def __init__(
        self,
        store: RateLimitStore,
        policies: dict[str, RateLimitPolicy] | None = None,
        clock: Callable[[], datetime] = utcnow,
        audit_retention_days: int = AUDIT_RETENTION_DAYS,
    ) -> None:
        self._store = store
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock
        self._audit_retention_seconds = audit_retention_days * 24 * 60 * 60
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @property
    def policies(self) -> dict[str, RateLimitPolicy]:
        return dict(self._policies)

    def get_policy(self, action: str) -> RateLimitPolicy | None:
        return self._policies.get(action)

    def _key_lock(self, identifier: str, action: str) -> threading.Lock:
        return self._locks[hash((identifier, action)) % LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def check_rate_limit(self, identifier: str, action: str, client_ip: str | None = None) -> RateLimitResult:
        """Consume one admission for (identifier, action) and report the decision.

        Unknown actions are always allowed and leave no state behind.
        """
        policy = self._policies.get(action)
        if policy is None:
            return RateLimitResult(allowed=True, remaining=-1, algorithm="none")

        with self._key_lock(identifier, action):
            now = to_epoch(self._clock())
            with self._store.begin() as conn:
                record = self._store.get_record(conn, identifier, action)
                if record is not None and record.locked_until is not None:
                    if record.locked_until > now:
                        return self._locked(policy, record.locked_until, now)
                    # Lock served; the key starts afresh.
                    record = RateLimitRecord(identifier=identifier, action=action)
                    self._store.prune_hits(conn, identifier, action, now)
                    self._store.save_record(conn, record, now)

                if policy.algorithm is Algorithm.FIXED_WINDOW:
                    result = self._check_fixed(conn, record, identifier, action, policy, now)
                elif policy.algorithm is Algorithm.SLIDING_WINDOW:
                    result = self._check_sliding(conn, record, identifier, action, policy, now)
                else:
                    result = self._check_bucket(conn, record, identifier, action, policy, now)

        if result.locked:
            logger.warning(
                "Lockout started: action=%s ip=%s until=%s",
                action,
                client_ip or "-",
                result.lockout_end_time.isoformat(),
            )
        return result

    def release(self, identifier: str, action: str) -> bool:
        """Give back the admission taken by the last check, once the guarded action succeeded.

        Only failures then count toward the limit: a user who keeps signing
        in with the right password is never locked out. A key that is
        already locked stays locked. Returns True if an admission was
        returned.
        """
        policy = self._policies.get(action)
        if policy is None:
            return False

        with self._key_lock(identifier, action):
            now = to_epoch(self._clock())
            with self._store.begin() as conn:
                record = self._store.get_record(conn, identifier, action)
                if record is None or (record.locked_until is not None and record.locked_until > now):
                    return False

                if policy.algorithm is Algorithm.FIXED_WINDOW:
                    window_start = math.floor(now / policy.window_seconds) * policy.window_seconds
                    return self._store.decrement(conn, identifier, action, window_start, now)

                if policy.algorithm is Algorithm.SLIDING_WINDOW:
                    self._store.prune_hits(conn, identifier, action, now - policy.window_seconds)
                    if not self._store.drop_newest_hit(conn, identifier, action):
                        return False
                    hits = self._store.live_hits(conn, identifier, action)
                    record.attempts = len(hits)
                    record.window_start = hits[0] if hits else None
                    self._store.save_record(conn, record, now)
                    return True

                if record.tokens is None:
                    return False
                record.tokens = min(policy.capacity, record.tokens + 1.0)
                self._store.save_record(conn, record, now)
                return True

    def _check_fixed(self, conn, record, identifier, action, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        window_start = math.floor(now / policy.window_seconds) * policy.window_seconds
        window_end = window_start + policy.window_seconds

        if record is None or record.window_start != window_start:
            record = RateLimitRecord(identifier=identifier, action=action, attempts=0, window_start=window_start)
            self._store.save_record(conn, record, now)

        count = self._store.increment_below(conn, identifier, action, window_start, policy.max_attempts, now)
        if count is not None:
            return RateLimitResult(
                allowed=True,
                remaining=max(0, policy.max_attempts - count),
                reset_time=from_epoch(window_end),
                algorithm=policy.algorithm.value,
            )
        return self._deny(conn, record, policy, now, reset_at=window_end)

    def _check_sliding(self, conn, record, identifier, action, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        self._store.prune_hits(conn, identifier, action, now - policy.window_seconds)
        hits = self._store.live_hits(conn, identifier, action)
        if record is None:
            record = RateLimitRecord(identifier=identifier, action=action)

        if len(hits) < policy.max_attempts:
            self._store.add_hit(conn, identifier, action, now)
            hits.append(now)
            record.attempts = len(hits)
            record.window_start = hits[0]
            self._store.save_record(conn, record, now)
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_attempts - len(hits),
                reset_time=from_epoch(hits[0] + policy.window_seconds),
                algorithm=policy.algorithm.value,
            )

        oldest = hits[0] if hits else now
        return self._deny(conn, record, policy, now, reset_at=oldest + policy.window_seconds)

    def _check_bucket(self, conn, record, identifier, action, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        capacity = policy.capacity
        rate = policy.refill_per_second
        if record is None or record.tokens is None or record.last_refill is None:
            tokens = capacity
        else:
            elapsed = max(0.0, now - record.last_refill)
            tokens = min(capacity, record.tokens + elapsed * rate)
        if record is None:
            record = RateLimitRecord(identifier=identifier, action=action)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        record.tokens = tokens
        record.last_refill = now
        self._store.save_record(conn, record, now)

        if allowed:
            reset_time = from_epoch(now + (capacity - tokens) / rate) if rate > 0 else None
            return RateLimitResult(
                allowed=True,
                remaining=int(tokens),
                reset_time=reset_time,
                algorithm=policy.algorithm.value,
            )
        if rate <= 0:
            return RateLimitResult(allowed=False, remaining=0, algorithm=policy.algorithm.value)
        wait = (1.0 - tokens) / rate
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=from_epoch(now + wait),
            algorithm=policy.algorithm.value,
            retry_after=_retry_after(wait),
        )

    def _deny(self, conn, record: RateLimitRecord, policy: RateLimitPolicy, now: float, reset_at: float) -> RateLimitResult:
        if policy.lockout_minutes > 0:
            record.locked_until = now + policy.lockout_seconds
            self._store.save_record(conn, record, now)
            return self._locked(policy, record.locked_until, now)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=from_epoch(reset_at),
            algorithm=policy.algorithm.value,
            retry_after=_retry_after(reset_at - now),
        )

    def _locked(self, policy: RateLimitPolicy, locked_until: float, now: float) -> RateLimitResult:
        end = from_epoch(locked_until)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=end,
            locked=True,
            lockout_end_time=end,
            algorithm=policy.algorithm.value,
            retry_after=_retry_after(locked_until - now),
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def record_attempt(
        self,
        identifier: str,
        action: str,
        success: bool,
        client_ip: str | None = None,
        user_agent: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Write an audit row. Never raises; never influences check_rate_limit()."""
        try:
            self._store.insert_attempt(
                AuthAttempt(
                    identifier=identifier,
                    action=action,
                    success=success,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    user_id=user_id,
                    created_at=self._clock(),
                )
            )
        except Exception:
            logger.exception("Failed to record %s attempt", action)

    def get_attempts(self, identifier: str | None = None, action: str | None = None) -> list[AuthAttempt]:
        return self._store.list_attempts(identifier, action)

    def get_rate_limit_stats(
        self, identifier: str | None = None, action: str | None = None, hours: int = 24
    ) -> RateLimitStats:
        since = to_epoch(self._clock()) - hours * 60 * 60
        return self._store.attempt_stats(since, identifier, action)

    # ------------------------------------------------------------------
    # Administration and maintenance
    # ------------------------------------------------------------------

    def clear_rate_limit(self, identifier: str, action: str | None = None) -> None:
        """Drop counters and any lockout for identifier (one action, or all)."""
        removed = self._store.clear(identifier, action)
        logger.info("Cleared rate-limit state: action=%s records=%d", action or "*", removed)

    def cleanup_expired_state(self) -> int:
        """Delete counters nobody can observe any more, stale hits, and old audit rows."""
        now = to_epoch(self._clock())
        removed = 0
        for action, policy in self._policies.items():
            horizon = max(policy.window_seconds, policy.lockout_seconds)
            if policy.algorithm is Algorithm.TOKEN_BUCKET and policy.refill_per_second > 0:
                horizon = max(horizon, policy.capacity / policy.refill_per_second)
            removed += self._store.delete_stale_records(action, now - horizon, now)
            removed += self._store.delete_old_hits(action, now - policy.window_seconds)
        removed += self._store.delete_idle_records_except(list(self._policies), now - _ORPHAN_IDLE_SECONDS)
        removed += self._store.delete_old_attempts(now - self._audit_retention_seconds)
        if removed:
            logger.info("Rate-limit cleanup removed %d row(s)", removed)
        return removed
