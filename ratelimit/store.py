"""
ratelimit/store.py -- SQLAlchemy Core persistence for rate-limit state and audit.

Three tables:
  rate_limits        one row per (identifier, action): counters, lock, bucket
  rate_limit_hits    one row per admitted check for sliding-window actions
  auth_attempts      audit log written by record_attempt(); never read by the
                     decision path

Decision-path methods take an open Connection so the limiter can run a whole
check (read, compare, write) inside one transaction:

    with store.begin() as conn:
        record = store.get_record(conn, identifier, action)
        ...
        store.save_record(conn, record, now)

Audit and maintenance methods open their own connections, like the other
stores in the project.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    case,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.tokens import from_epoch, to_epoch
from ratelimit.models import AuthAttempt, RateLimitRecord, RateLimitStats

_metadata = MetaData()

_limits = Table(
    "rate_limits",
    _metadata,
    Column("identifier", String(255), nullable=False),
    Column("action", String(50), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("window_start", Float),
    Column("locked_until", Float),
    Column("tokens", Float),
    Column("last_refill", Float),
    Column("updated_at", Float, nullable=False),
    PrimaryKeyConstraint("identifier", "action"),
)

_hits = Table(
    "rate_limit_hits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("action", String(50), nullable=False),
    Column("hit_at", Float, nullable=False),
    Index("ix_rate_limit_hits_key", "identifier", "action", "hit_at"),
)

_attempts = Table(
    "auth_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("action", String(50), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("user_id", String(36)),
    Column("created_at", Float, nullable=False),
    Index("ix_auth_attempts_created", "created_at"),
)


def _key(identifier: str, action: str):
    return (_limits.c.identifier == identifier) & (_limits.c.action == action)


class RateLimitStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(engine)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction; commit on success, roll back on error."""
        with self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Counter state (transactional)
    # ------------------------------------------------------------------

    def get_record(self, conn: Connection, identifier: str, action: str) -> RateLimitRecord | None:
        row = conn.execute(_limits.select().where(_key(identifier, action))).fetchone()
        return _row_to_record(row) if row is not None else None

    def save_record(self, conn: Connection, record: RateLimitRecord, now: float) -> None:
        """Upsert the full record for its (identifier, action) key."""
        values = {
            "attempts": record.attempts,
            "window_start": record.window_start,
            "locked_until": record.locked_until,
            "tokens": record.tokens,
            "last_refill": record.last_refill,
            "updated_at": now,
        }
        result = conn.execute(_limits.update().where(_key(record.identifier, record.action)).values(**values))
        if result.rowcount == 0:
            conn.execute(_limits.insert().values(identifier=record.identifier, action=record.action, **values))

    def increment_below(
        self, conn: Connection, identifier: str, action: str, window_start: float, max_attempts: int, now: float
    ) -> int | None:
        """Conditionally bump attempts for the current window.

        UPDATE ... SET attempts = attempts + 1 WHERE attempts < max. Returns the
        new count, or None when the window was already full.
        """
        result = conn.execute(
            _limits.update()
            .where(
                _key(identifier, action)
                & (_limits.c.window_start == window_start)
                & (_limits.c.attempts < max_attempts)
            )
            .values(attempts=_limits.c.attempts + 1, updated_at=now)
        )
        if result.rowcount != 1:
            return None
        return conn.execute(select(_limits.c.attempts).where(_key(identifier, action))).scalar()

    def decrement(self, conn: Connection, identifier: str, action: str, window_start: float, now: float) -> bool:
        """Undo one increment in the given window. False if the window moved on or is empty."""
        result = conn.execute(
            _limits.update()
            .where(_key(identifier, action) & (_limits.c.window_start == window_start) & (_limits.c.attempts > 0))
            .values(attempts=_limits.c.attempts - 1, updated_at=now)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Sliding-window hits (transactional)
    # ------------------------------------------------------------------

    def prune_hits(self, conn: Connection, identifier: str, action: str, before: float) -> None:
        conn.execute(
            _hits.delete().where(
                (_hits.c.identifier == identifier) & (_hits.c.action == action) & (_hits.c.hit_at <= before)
            )
        )

    def live_hits(self, conn: Connection, identifier: str, action: str) -> list[float]:
        rows = conn.execute(
            select(_hits.c.hit_at)
            .where((_hits.c.identifier == identifier) & (_hits.c.action == action))
            .order_by(_hits.c.hit_at)
        ).fetchall()
        return [r.hit_at for r in rows]

    def add_hit(self, conn: Connection, identifier: str, action: str, at: float) -> None:
        conn.execute(_hits.insert().values(identifier=identifier, action=action, hit_at=at))

    def drop_newest_hit(self, conn: Connection, identifier: str, action: str) -> bool:
        newest = conn.execute(
            select(_hits.c.id)
            .where((_hits.c.identifier == identifier) & (_hits.c.action == action))
            .order_by(_hits.c.hit_at.desc(), _hits.c.id.desc())
            .limit(1)
        ).scalar()
        if newest is None:
            return False
        conn.execute(_hits.delete().where(_hits.c.id == newest))
        return True

    # ------------------------------------------------------------------
    # Administration and maintenance
    # ------------------------------------------------------------------

    def clear(self, identifier: str, action: str | None = None) -> int:
        """Delete counter state (and hits) for identifier, optionally one action only."""
        limit_cond = _limits.c.identifier == identifier
        hit_cond = _hits.c.identifier == identifier
        if action is not None:
            limit_cond = limit_cond & (_limits.c.action == action)
            hit_cond = hit_cond & (_hits.c.action == action)
        with self.engine.begin() as conn:
            removed = conn.execute(_limits.delete().where(limit_cond)).rowcount
            conn.execute(_hits.delete().where(hit_cond))
        return removed

    def delete_stale_records(self, action: str, idle_before: float, now: float) -> int:
        """Delete records for action untouched since idle_before and not currently locked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _limits.delete().where(
                    (_limits.c.action == action)
                    & (_limits.c.updated_at < idle_before)
                    & ((_limits.c.locked_until.is_(None)) | (_limits.c.locked_until <= now))
                )
            )
        return result.rowcount

    def delete_idle_records_except(self, actions: list[str], idle_before: float) -> int:
        """Delete records for actions no policy covers any more."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _limits.delete().where(_limits.c.action.not_in(actions) & (_limits.c.updated_at < idle_before))
            )
        return result.rowcount

    def delete_old_hits(self, action: str, before: float) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_hits.delete().where((_hits.c.action == action) & (_hits.c.hit_at <= before)))
        return result.rowcount

    def delete_old_attempts(self, before: float) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_attempts.delete().where(_attempts.c.created_at < before))
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def insert_attempt(self, attempt: AuthAttempt) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _attempts.insert().values(
                    identifier=attempt.identifier,
                    action=attempt.action,
                    success=attempt.success,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    user_id=attempt.user_id,
                    created_at=to_epoch(attempt.created_at),
                )
            )
            return result.inserted_primary_key[0]

    def list_attempts(self, identifier: str | None = None, action: str | None = None) -> list[AuthAttempt]:
        query = _attempts.select().order_by(_attempts.c.created_at)
        if identifier is not None:
            query = query.where(_attempts.c.identifier == identifier)
        if action is not None:
            query = query.where(_attempts.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def attempt_stats(self, since: float, identifier: str | None = None, action: str | None = None) -> RateLimitStats:
        success_count = func.sum(case((_attempts.c.success.is_(True), 1), else_=0))
        query = select(
            func.count(),
            success_count,
            func.count(func.distinct(_attempts.c.ip_address)),
        ).where(_attempts.c.created_at >= since)
        if identifier is not None:
            query = query.where(_attempts.c.identifier == identifier)
        if action is not None:
            query = query.where(_attempts.c.action == action)
        with self.engine.connect() as conn:
            total, successful, unique_ips = conn.execute(query).one()
        total = total or 0
        successful = int(successful or 0)
        return RateLimitStats(total=total, successful=successful, failed=total - successful, unique_ips=unique_ips or 0)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RateLimitRecord:
    return RateLimitRecord(
        identifier=row.identifier,
        action=row.action,
        attempts=row.attempts,
        window_start=row.window_start,
        locked_until=row.locked_until,
        tokens=row.tokens,
        last_refill=row.last_refill,
        updated_at=row.updated_at,
    )


def _row_to_attempt(row) -> AuthAttempt:
    return AuthAttempt(
        id=row.id,
        identifier=row.identifier,
        action=row.action,
        success=bool(row.success),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        user_id=row.user_id,
        created_at=from_epoch(row.created_at),
    )
