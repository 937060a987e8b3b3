"""
auth/verification.py -- Purpose-bound, expiring, single-use tokens.

Backs the password-reset and email-verification workflows (and any other
"prove you received this" flow). Each token is bound to an identifier (an
email address for the built-in flows) and a purpose string.

Guarantees:
  - A token validates at most once. verify_token() consumes it through
    TokenStore.consume(), a single conditional UPDATE, so two concurrent
    verifications cannot both succeed.
  - Issuing a new token for (identifier, purpose) drops any earlier
    unconsumed ones, so only the most recent link works.
  - Zero or negative TTLs are accepted; the token is simply born expired.

Not-found, wrong identifier, wrong purpose, consumed and expired all come back
as TokenVerification(valid=False). Only storage errors raise.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.models import OneTimeToken, TokenData, TokenVerification
from auth.store import TokenStore
from auth.tokens import generate_token, hash_token, utcnow

logger = logging.getLogger("authcore.tokens")


class TokenService:
    def __init__(
        self,
        store: TokenStore,
        clock: Callable[[], datetime] = utcnow,
        secret_key: str | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._secret_key = secret_key

    def _hash(self, raw: str) -> str:
        return hash_token(raw, self._secret_key)

    def create_token(self, identifier: str, purpose: str, ttl_minutes: int = 60) -> TokenData:
        """Issue a fresh token for identifier/purpose and return the raw value once."""
        now = self._clock()
        expires = now + timedelta(minutes=ttl_minutes)
        raw = generate_token()

        replaced = self._store.delete_unconsumed(identifier, purpose)
        if replaced:
            logger.debug("Replaced %d outstanding %s token(s)", replaced, purpose)

        self._store.create_token(
            OneTimeToken(
                identifier=identifier,
                purpose=purpose,
                token_hash=self._hash(raw),
                created_at=now,
                expires_at=expires,
            )
        )
        return TokenData(token=raw, purpose=purpose, expires=expires)

    def verify_token(self, token: str, identifier: str, purpose: str | None = None) -> TokenVerification:
        """Validate and consume a token in one step.

        When purpose is given, a token issued for any other purpose is
        rejected even if identifier and value match.
        """
        if not token or not identifier:
            return TokenVerification(valid=False)
        consumed = self._store.consume(self._hash(token), identifier, self._clock(), purpose)
        if consumed is None:
            return TokenVerification(valid=False)
        return TokenVerification(valid=True, purpose=consumed.purpose)

    def cleanup_expired_tokens(self) -> int:
        """Delete every expired token, consumed or not. Returns the number removed."""
        removed = self._store.delete_expired(self._clock())
        if removed:
            logger.info("Removed %d expired one-time token(s)", removed)
        return removed

    def get_tokens_for_identifier(self, identifier: str) -> list[OneTimeToken]:
        return self._store.list_for_identifier(identifier)

    def delete_tokens_for_identifier(self, identifier: str) -> int:
        return self._store.delete_for_identifier(identifier)
