"""
ratelimit/models.py -- Policy, state and result dataclasses for the rate limiter.

RateLimitRecord is the persisted counter for one (identifier, action) key.
Which of its fields matter depends on the algorithm:

  fixed_window    attempts, window_start, locked_until
  sliding_window  attempts (hits in the trailing window), window_start
                  (oldest live hit), locked_until; the hits themselves live
                  in their own table
  token_bucket    tokens, last_refill
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Algorithm(str, Enum):
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limits for one action.

    For token_bucket, burst_limit is the bucket capacity and refill_rate the
    number of tokens added per window_minutes; both fall back to max_attempts.
    lockout_minutes of 0 means "deny until the window frees up" instead of a
    hard lock.
    """

    max_attempts: int
    window_minutes: int
    lockout_minutes: int
    algorithm: Algorithm = Algorithm.FIXED_WINDOW
    burst_limit: int | None = None
    refill_rate: int | None = None

    def __post_init__(self) -> None:
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be positive")
        if self.max_attempts < 0 or self.lockout_minutes < 0:
            raise ValueError("max_attempts and lockout_minutes must not be negative")

    @property
    def window_seconds(self) -> float:
        return self.window_minutes * 60.0

    @property
    def lockout_seconds(self) -> float:
        return self.lockout_minutes * 60.0

    @property
    def capacity(self) -> float:
        return float(self.burst_limit if self.burst_limit is not None else self.max_attempts)

    @property
    def refill_per_second(self) -> float:
        rate = self.refill_rate if self.refill_rate is not None else self.max_attempts
        if self.window_seconds <= 0:
            return 0.0
        return rate / self.window_seconds


@dataclass
class RateLimitRecord:
    identifier: str
    action: str
    attempts: int = 0
    window_start: float | None = None
    locked_until: float | None = None
    tokens: float | None = None
    last_refill: float | None = None
    updated_at: float | None = None


@dataclass
class AuthAttempt:
    """One audited attempt. Purely informational; never feeds a decision."""

    identifier: str
    action: str
    success: bool
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    user_id: str | None = None
    id: int | None = None


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime | None = None
    locked: bool = False
    lockout_end_time: datetime | None = None
    algorithm: str = "none"
    retry_after: int | None = None  # seconds, for the Retry-After header


@dataclass
class RateLimitStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    unique_ips: int = 0
