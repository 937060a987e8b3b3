"""
tests/test_tokens.py -- Unit tests for auth.tokens and auth.audit helpers.

Covers password hashing, opaque token generation/hashing, email
normalization and the masking applied before auth events reach the log.
"""

from __future__ import annotations

import logging
import re

import pytest

from auth.audit import log_auth_event, log_security_event, mask_email, mask_ip
from auth.tokens import (
    generate_token,
    hash_password,
    hash_token,
    is_valid_email,
    normalize_email,
    password_policy_error,
    verify_password,
)


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("correct-horse-1")
        assert hashed.startswith("$2")
        assert verify_password("correct-horse-1", hashed) is True
        assert verify_password("Correct-horse-1", hashed) is False

    def test_hashes_are_salted(self):
        assert hash_password("same-password") != hash_password("same-password")

    def test_malformed_hash_never_matches(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    @pytest.mark.parametrize(
        "password, expected",
        [
            ("", "Password must be at least 8 characters"),
            ("1234567", "Password must be at least 8 characters"),
            ("12345678", None),
        ],
    )
    def test_policy(self, password, expected):
        assert password_policy_error(password, 8) == expected

    def test_policy_minimum_is_configurable(self):
        assert password_policy_error("12345678", 12) == "Password must be at least 12 characters"


class TestOpaqueTokens:
    def test_generate_token(self):
        token = generate_token()
        assert re.fullmatch(r"[0-9a-f]{64}", token)
        assert generate_token() != token

    def test_hash_is_deterministic_per_key(self):
        assert hash_token("abc", "k" * 32) == hash_token("abc", "k" * 32)
        assert hash_token("abc", "k" * 32) != hash_token("abc", "j" * 32)
        assert len(hash_token("abc", "k" * 32)) == 64


class TestEmail:
    def test_normalize(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
        assert normalize_email(None) == ""

    @pytest.mark.parametrize("email", ["alice@example.com", "a.b+tag@sub.example.org"])
    def test_valid(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", "alice", "alice@example", "a b@example.com", "@example.com"])
    def test_invalid(self, email):
        assert not is_valid_email(email)


class TestAudit:
    def test_mask_email(self):
        assert mask_email("john@example.com") == "jo***@example.com"
        assert mask_email("j@example.com") == "j***@example.com"
        assert mask_email("not-an-email") == "***"
        assert mask_email(None) is None

    def test_mask_ip(self):
        assert mask_ip("203.0.113.42") == "203.0.113.x"
        assert mask_ip("2001:db8:85a3:0:0:8a2e:370:7334") == "2001:db8:85a3:0::x"
        assert mask_ip("testclient") == "testclient"
        assert mask_ip(None) is None

    def test_failed_auth_event_is_warning_and_masked(self, caplog):
        with caplog.at_level(logging.INFO, logger="authcore.audit"):
            log_auth_event("login", False, email="john@example.com", ip_address="203.0.113.42", error="Invalid credentials")
        [record] = caplog.records
        assert record.levelno == logging.WARNING
        message = record.getMessage()
        assert "john@example.com" not in message
        assert "jo***@example.com" in message
        assert "203.0.113.x" in message
        assert 'error="Invalid credentials"' in message

    def test_successful_auth_event_is_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="authcore.audit"):
            log_auth_event("logout", True, user_id="u-1")
        assert caplog.records[0].levelno == logging.INFO
        assert "user_id=u-1" in caplog.records[0].getMessage()

    @pytest.mark.parametrize(
        "severity, level",
        [("low", logging.INFO), ("medium", logging.WARNING), ("high", logging.ERROR), ("critical", logging.ERROR)],
    )
    def test_security_event_levels(self, caplog, severity, level):
        with caplog.at_level(logging.INFO, logger="authcore.audit"):
            log_security_event("brute_force", severity, action_taken="login_locked")
        assert caplog.records[0].levelno == level

    def test_unknown_events_rejected(self):
        with pytest.raises(ValueError):
            log_auth_event("teleport", True)
        with pytest.raises(ValueError):
            log_security_event("teleport", "low")
