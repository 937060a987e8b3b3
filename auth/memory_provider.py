"""
auth/memory_provider.py -- AuthProvider backed by process memory.

For development and tests. State is per instance (two providers never share
users) and guarded by an RLock, so concurrent sign-ups of the same email
still end with exactly one account. Users handed out are copies; mutating
one does not touch the stored record.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from threading import RLock

from auth.models import AuthResult, ProfileUpdate, User
from auth.provider import (
    EMAIL_EXISTS,
    EMAIL_IN_USE,
    INVALID_CREDENTIALS,
    OAUTH_ACCOUNT_CONFLICT,
    USER_NOT_FOUND,
    WRONG_CURRENT_PASSWORD,
    AuthProvider,
)
from auth.tokens import burn_password_check, hash_password, normalize_email, utcnow, verify_password
from core.config import Settings


@dataclass
class _Record:
    user: User
    hashed_password: str | None = None


class MemoryAuthProvider(AuthProvider):
    """In-memory identity store.

    seed_users: optional iterable of dicts with email, password and optionally
    name and verified (bool), created at construction time.
    """

    name = "memory"

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        seed_users: Iterable[dict] | None = None,
    ) -> None:
        super().__init__(settings, clock)
        self._lock = RLock()
        self._records: dict[str, _Record] = {}
        self._by_email: dict[str, str] = {}
        for seed in seed_users or ():
            result = self.create_user(seed["email"], seed["password"], seed.get("name"))
            if not result.success:
                raise ValueError(f"Invalid seed user {seed['email']!r}: {result.error}")
            if seed.get("verified"):
                self.verify_user_email(result.user.id)

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _find_by_email(self, email: str) -> _Record | None:
        user_id = self._by_email.get(email)
        return self._records.get(user_id) if user_id else None

    def _insert(self, user: User, hashed_password: str | None) -> User:
        user.id = str(uuid.uuid4())
        user.created_at = user.updated_at = self._now_iso()
        self._records[user.id] = _Record(user=user, hashed_password=hashed_password)
        self._by_email[user.email] = user.id
        return replace(user)

    def create_user(self, email: str, password: str, name: str | None = None) -> AuthResult:
        email = normalize_email(email)
        error = self._check_new_credentials(email, password)
        if error:
            return AuthResult.fail(error)
        hashed = hash_password(password)
        with self._lock:
            if email in self._by_email:
                return AuthResult.fail(EMAIL_EXISTS)
            user = self._insert(User(email=email, name=name), hashed)
        return AuthResult.ok(user)

    def authenticate_user(self, email: str, password: str) -> AuthResult:
        with self._lock:
            record = self._find_by_email(normalize_email(email))
            hashed = record.hashed_password if record else None
            user = replace(record.user) if record else None
        if hashed is None:
            burn_password_check(password)
            return AuthResult.fail(INVALID_CREDENTIALS)
        if not verify_password(password, hashed):
            return AuthResult.fail(INVALID_CREDENTIALS)
        return AuthResult.ok(user)

    def get_user_by_id(self, user_id: str) -> AuthResult:
        with self._lock:
            record = self._records.get(user_id)
            return AuthResult.ok(replace(record.user) if record else None)

    def get_user_by_email(self, email: str) -> AuthResult:
        with self._lock:
            record = self._find_by_email(normalize_email(email))
            return AuthResult.ok(replace(record.user) if record else None)

    def update_user(self, user_id: str, update: ProfileUpdate) -> AuthResult:
        changes, new_email = self._clean_profile(update)
        if new_email is not None:
            error = self._check_email(new_email)
            if error:
                return AuthResult.fail(error)
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return AuthResult.fail(USER_NOT_FOUND)
            user = record.user
            if new_email is not None and new_email != user.email:
                if new_email in self._by_email:
                    return AuthResult.fail(EMAIL_IN_USE)
                del self._by_email[user.email]
                self._by_email[new_email] = user.id
                user.email = new_email
                user.email_verified = None
            for field_name, value in changes.items():
                setattr(user, field_name, value)
            user.updated_at = self._now_iso()
            return AuthResult.ok(replace(user))

    def delete_user(self, user_id: str) -> AuthResult:
        with self._lock:
            record = self._records.pop(user_id, None)
            if record is None:
                return AuthResult.fail(USER_NOT_FOUND)
            self._by_email.pop(record.user.email, None)
            return AuthResult.ok(replace(record.user))

    def verify_user_email(self, user_id: str) -> AuthResult:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return AuthResult.fail(USER_NOT_FOUND)
            record.user.email_verified = self._clock()
            record.user.updated_at = self._now_iso()
            return AuthResult.ok(replace(record.user))

    def change_user_password(self, user_id: str, current_password: str, new_password: str) -> AuthResult:
        with self._lock:
            record = self._records.get(user_id)
            hashed = record.hashed_password if record else None
        if record is None:
            return AuthResult.fail(USER_NOT_FOUND)
        if hashed is None or not verify_password(current_password, hashed):
            return AuthResult.fail(WRONG_CURRENT_PASSWORD)
        error = self._check_password(new_password)
        if error:
            return AuthResult.fail(error)
        return self._set_password(user_id, new_password)

    def reset_user_password(self, user_id: str, new_password: str) -> AuthResult:
        with self._lock:
            if user_id not in self._records:
                return AuthResult.fail(USER_NOT_FOUND)
        error = self._check_password(new_password)
        if error:
            return AuthResult.fail(error)
        return self._set_password(user_id, new_password)

    def _set_password(self, user_id: str, new_password: str) -> AuthResult:
        hashed = hash_password(new_password)
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return AuthResult.fail(USER_NOT_FOUND)
            record.hashed_password = hashed
            record.user.updated_at = self._now_iso()
            return AuthResult.ok(replace(record.user))

    def complete_oauth_sign_in(
        self, provider: str, email: str, subject: str, name: str | None = None
    ) -> AuthResult:
        email = normalize_email(email)
        with self._lock:
            for record in self._records.values():
                if record.user.oauth_provider == provider and record.user.oauth_subject == subject:
                    return AuthResult.ok(replace(record.user))

            record = self._find_by_email(email)
            if record is not None:
                user = record.user
                if user.oauth_subject is not None:
                    return AuthResult.fail(OAUTH_ACCOUNT_CONFLICT)
                user.oauth_provider = provider
                user.oauth_subject = subject
                # The provider vouched for this address.
                user.email_verified = user.email_verified or self._clock()
                user.updated_at = self._now_iso()
                return AuthResult.ok(replace(user))

            user = User(
                email=email,
                name=name,
                email_verified=self._clock(),
                oauth_provider=provider,
                oauth_subject=subject,
            )
            return AuthResult.ok(self._insert(user, None))
