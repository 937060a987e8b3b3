"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, SessionStore and TokenStore are
the repositories (one clean interface per entity); the _row_to_* functions are
the mappers. Providers and managers never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Session tokens and one-time tokens are stored only as HMAC hashes. The
  stores never see a raw token.

  Email uniqueness is enforced by a UNIQUE constraint on users.email. Callers
  normalize (strip + lower-case) before every read and write, so the
  constraint is effectively case-insensitive.

Atomicity:
  TokenStore.consume() is a single conditional UPDATE. Two concurrent
  verifications of the same token race on that statement and exactly one sees
  rowcount == 1 -- there is no read-then-write window.

Timestamps:
  Session, token and rate-limit times are UTC epoch seconds (REAL), which
  compare numerically in SQL. User timestamps are ISO-8601 strings because
  they are only ever displayed, never compared.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from auth.models import OneTimeToken, Session, User
from auth.tokens import from_epoch, to_epoch, utcnow

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authcore.db'}"

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("name", String(255)),
    Column("image", Text),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("email_verified", String(32)),  # ISO timestamp, NULL = unverified
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("created_at", Float, nullable=False),
    Column("last_activity", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("ended_reason", String(30)),
    Index("ix_user_sessions_user_active", "user_id", "is_active"),
)

_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("purpose", String(50), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("consumed_at", Float),
    Index("ix_verification_tokens_identifier", "identifier", "purpose"),
)

# Whitelist of user columns update_user() accepts. Column names never come
# from raw input; anything else raises ValueError before any SQL runs.
_USER_UPDATE_FIELDS = {"name", "email", "image", "hashed_password", "email_verified", "oauth_provider", "oauth_subject"}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def open_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create the engine every store in the process shares.

    Plain in-memory SQLite is per-connection, so it gets a StaticPool (one
    connection for the whole engine); otherwise a second store would see a
    blank schema. File databases get WAL mode.
    """
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if db_url in _MEMORY_URLS:
            return create_engine(db_url, connect_args=connect_args, poolclass=StaticPool)
        engine = create_engine(db_url, connect_args=connect_args)
        if "mode=memory" not in db_url:
            event.listen(engine, "connect", _set_wal_mode)
        return engine
    return create_engine(db_url, pool_pre_ping=True)


def init_schema(engine: Engine) -> None:
    """Create the auth tables if they do not exist. Idempotent."""
    _metadata.create_all(engine)


def _now_iso() -> str:
    return utcnow().isoformat()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records (and their password hashes).

    Usage:
        engine = open_engine()
        store = UserStore(engine)
        user_id = store.create_user(User(email="a@x.com"), hashed_password=hash_password("secret123"))
        user = store.get_by_email("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        init_schema(engine)

    def create_user(self, user: User, hashed_password: str | None = None) -> str:
        """Insert a new user and return its generated ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Providers catch it as the race-safe "Email already exists" signal:
        two concurrent sign-ups can both pass the pre-check, only one insert
        wins.
        """
        user_id = user.id or str(uuid.uuid4())
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    name=user.name,
                    image=user.image,
                    hashed_password=hashed_password,
                    email_verified=user.email_verified.isoformat() if user.email_verified else None,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_password_hash(self, user_id: str) -> str | None:
        """Return the stored bcrypt hash, or None for OAuth-only / missing users."""
        with self.engine.connect() as conn:
            return conn.execute(select(_users.c.hashed_password).where(_users.c.id == user_id)).scalar()

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (oauth_provider, oauth_subject). Returns None if unlinked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: see _USER_UPDATE_FIELDS. email_verified may be passed
        as a datetime or None; it is stored as ISO text.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError when a new email collides with another user.
        """
        unknown = set(fields) - _USER_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email_verified" in fields and isinstance(fields["email_verified"], datetime):
            fields["email_verified"] = fields["email_verified"].isoformat()
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found.

        Sessions and tokens are not cascaded here -- AuthService tears them
        down explicitly so it can log the reason.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session rows. Deactivation is a soft flag; cleanup deletes."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        init_schema(engine)

    def create_session(self, session: Session) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    created_at=to_epoch(session.created_at),
                    last_activity=to_epoch(session.last_activity),
                    expires_at=to_epoch(session.expires_at),
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    is_active=True,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_token_hash(self, token_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_id(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def active_sessions(self, user_id: str) -> list[Session]:
        """Return the user's active sessions, oldest creation first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active.is_(True)))
                .order_by(_sessions.c.created_at, _sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def touch(self, session_id: int, last_activity: datetime, expires_at: datetime) -> bool:
        """Refresh activity/expiry on an active session. False if it was deactivated meanwhile."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.is_active.is_(True)))
                .values(last_activity=to_epoch(last_activity), expires_at=to_epoch(expires_at))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, session_id: int, reason: str) -> bool:
        """Flip one session to inactive. Idempotent: False if already inactive."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.is_active.is_(True)))
                .values(is_active=False, ended_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_for_user(self, user_id: str, reason: str, except_id: int | None = None) -> int:
        """Bulk-deactivate a user's active sessions, optionally sparing one."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.is_active.is_(True))
        if except_id is not None:
            condition = condition & (_sessions.c.id != except_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(is_active=False, ended_reason=reason))
            conn.commit()
        return result.rowcount

    def deactivate_expired(self, now: datetime, user_id: str | None = None) -> int:
        condition = (_sessions.c.is_active.is_(True)) & (_sessions.c.expires_at <= to_epoch(now))
        if user_id is not None:
            condition = condition & (_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(is_active=False, ended_reason="timeout"))
            conn.commit()
        return result.rowcount

    def delete_expired(self, now: datetime) -> int:
        """Delete rows that can never validate again: past expiry or already inactive."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.expires_at <= to_epoch(now)) | (_sessions.c.is_active.is_(False)))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# One-time tokens
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for OneTimeToken rows with an atomic consume operation."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        init_schema(engine)

    def create_token(self, token: OneTimeToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    identifier=token.identifier,
                    purpose=token.purpose,
                    token_hash=token.token_hash,
                    created_at=to_epoch(token.created_at),
                    expires_at=to_epoch(token.expires_at),
                    consumed_at=None,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def delete_unconsumed(self, identifier: str, purpose: str) -> int:
        """Remove outstanding tokens for (identifier, purpose) before a re-issue."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.delete().where(
                    (_tokens.c.identifier == identifier)
                    & (_tokens.c.purpose == purpose)
                    & (_tokens.c.consumed_at.is_(None))
                )
            )
            conn.commit()
        return result.rowcount

    def consume(self, token_hash: str, identifier: str, now: datetime, purpose: str | None = None) -> OneTimeToken | None:
        """Atomically mark a live token consumed and return it; None if nothing matched.

        The WHERE clause carries every validity condition (identifier, purpose,
        unconsumed, unexpired), so the check and the mark are one statement.
        """
        condition = (
            (_tokens.c.token_hash == token_hash)
            & (_tokens.c.identifier == identifier)
            & (_tokens.c.consumed_at.is_(None))
            & (_tokens.c.expires_at > to_epoch(now))
        )
        if purpose is not None:
            condition = condition & (_tokens.c.purpose == purpose)
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.update().where(condition).values(consumed_at=to_epoch(now)))
            conn.commit()
            if result.rowcount != 1:
                return None
            row = conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_for_identifier(self, identifier: str) -> list[OneTimeToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.identifier == identifier).order_by(_tokens.c.created_at)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def delete_expired(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= to_epoch(now)))
            conn.commit()
        return result.rowcount

    def delete_for_identifier(self, identifier: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.identifier == identifier))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        email_verified=datetime.fromisoformat(row.email_verified) if row.email_verified else None,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=from_epoch(row.created_at),
        last_activity=from_epoch(row.last_activity),
        expires_at=from_epoch(row.expires_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_active=bool(row.is_active),
        ended_reason=row.ended_reason,
    )


def _row_to_token(row) -> OneTimeToken:
    return OneTimeToken(
        id=row.id,
        identifier=row.identifier,
        purpose=row.purpose,
        token_hash=row.token_hash,
        created_at=from_epoch(row.created_at),
        expires_at=from_epoch(row.expires_at),
        consumed_at=from_epoch(row.consumed_at),
    )
