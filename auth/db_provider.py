"""
auth/db_provider.py -- AuthProvider backed by the SQL UserStore.

Email uniqueness is left to the UNIQUE constraint: the pre-check gives the
friendly message in the common case, and an IntegrityError from a concurrent
insert or email change maps to the same message, so two racing sign-ups
cannot both succeed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError

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
from auth.store import UserStore
from auth.tokens import burn_password_check, hash_password, normalize_email, utcnow, verify_password
from core.config import Settings

logger = logging.getLogger("authcore.auth")


class DatabaseAuthProvider(AuthProvider):
    name = "database"

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(settings, clock)
        self._store = store

    def create_user(self, email: str, password: str, name: str | None = None) -> AuthResult:
        email = normalize_email(email)
        error = self._check_new_credentials(email, password)
        if error:
            return AuthResult.fail(error)
        if self._store.get_by_email(email) is not None:
            return AuthResult.fail(EMAIL_EXISTS)
        try:
            user_id = self._store.create_user(User(email=email, name=name), hashed_password=hash_password(password))
        except IntegrityError:
            logger.info("Concurrent sign-up lost the race for the same email")
            return AuthResult.fail(EMAIL_EXISTS)
        return AuthResult.ok(self._store.get_by_id(user_id))

    def authenticate_user(self, email: str, password: str) -> AuthResult:
        user = self._store.get_by_email(normalize_email(email))
        hashed = self._store.get_password_hash(user.id) if user else None
        if hashed is None:
            burn_password_check(password)
            return AuthResult.fail(INVALID_CREDENTIALS)
        if not verify_password(password, hashed):
            return AuthResult.fail(INVALID_CREDENTIALS)
        return AuthResult.ok(user)

    def get_user_by_id(self, user_id: str) -> AuthResult:
        return AuthResult.ok(self._store.get_by_id(user_id))

    def get_user_by_email(self, email: str) -> AuthResult:
        return AuthResult.ok(self._store.get_by_email(normalize_email(email)))

    def update_user(self, user_id: str, update: ProfileUpdate) -> AuthResult:
        changes, new_email = self._clean_profile(update)
        user = self._store.get_by_id(user_id)
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)
        if new_email is not None and new_email != user.email:
            error = self._check_email(new_email)
            if error:
                return AuthResult.fail(error)
            if self._store.get_by_email(new_email) is not None:
                return AuthResult.fail(EMAIL_IN_USE)
            changes["email"] = new_email
            changes["email_verified"] = None
        if changes:
            try:
                self._store.update_user(user_id, **changes)
            except IntegrityError:
                return AuthResult.fail(EMAIL_IN_USE)
        return AuthResult.ok(self._store.get_by_id(user_id))

    def delete_user(self, user_id: str) -> AuthResult:
        user = self._store.get_by_id(user_id)
        if user is None or not self._store.delete_user(user_id):
            return AuthResult.fail(USER_NOT_FOUND)
        return AuthResult.ok(user)

    def verify_user_email(self, user_id: str) -> AuthResult:
        if not self._store.update_user(user_id, email_verified=self._clock()):
            return AuthResult.fail(USER_NOT_FOUND)
        return AuthResult.ok(self._store.get_by_id(user_id))

    def change_user_password(self, user_id: str, current_password: str, new_password: str) -> AuthResult:
        if self._store.get_by_id(user_id) is None:
            return AuthResult.fail(USER_NOT_FOUND)
        hashed = self._store.get_password_hash(user_id)
        if hashed is None or not verify_password(current_password, hashed):
            return AuthResult.fail(WRONG_CURRENT_PASSWORD)
        error = self._check_password(new_password)
        if error:
            return AuthResult.fail(error)
        self._store.update_user(user_id, hashed_password=hash_password(new_password))
        return AuthResult.ok(self._store.get_by_id(user_id))

    def reset_user_password(self, user_id: str, new_password: str) -> AuthResult:
        if self._store.get_by_id(user_id) is None:
            return AuthResult.fail(USER_NOT_FOUND)
        error = self._check_password(new_password)
        if error:
            return AuthResult.fail(error)
        if not self._store.update_user(user_id, hashed_password=hash_password(new_password)):
            return AuthResult.fail(USER_NOT_FOUND)
        return AuthResult.ok(self._store.get_by_id(user_id))

    def complete_oauth_sign_in(
        self, provider: str, email: str, subject: str, name: str | None = None
    ) -> AuthResult:
        # Fast path: returning user already linked.
        user = self._store.get_by_oauth(provider, subject)
        if user is not None:
            return AuthResult.ok(user)

        email = normalize_email(email)
        user = self._store.get_by_email(email)
        if user is not None:
            if user.oauth_subject is not None:
                return AuthResult.fail(OAUTH_ACCOUNT_CONFLICT)
            fields = {"oauth_provider": provider, "oauth_subject": subject}
            if user.email_verified is None:
                # The provider vouched for this address.
                fields["email_verified"] = self._clock()
            self._store.update_user(user.id, **fields)
            logger.info("Linked %s identity to existing user %s", provider, user.id)
            return AuthResult.ok(self._store.get_by_id(user.id))

        new_user = User(
            email=email,
            name=name,
            email_verified=self._clock(),
            oauth_provider=provider,
            oauth_subject=subject,
        )
        try:
            user_id = self._store.create_user(new_user, hashed_password=None)
        except IntegrityError:
            return AuthResult.fail(EMAIL_EXISTS)
        return AuthResult.ok(self._store.get_by_id(user_id))
