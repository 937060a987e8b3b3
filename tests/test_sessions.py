"""
tests/test_sessions.py -- Unit tests for auth.sessions.SessionManager.

Covers:
  - Creation: opaque 64-hex token, hashed at rest, absolute expiry
  - Validation outcomes: missing, unknown, inactive, expired, inactivity,
    user_missing
  - Sliding expiry and its absolute lifetime ceiling; EXPIRING action
  - Concurrent-session cap evicts the oldest; idle sessions are retired first
  - IP policy: ignore / flag / reject
  - Bulk invalidation with an exempt session
  - Cleanup and cookie strings
  - Per-user locks come from a fixed pool
"""

from __future__ import annotations

import re
import threading
from datetime import timedelta

import pytest

from auth.models import SessionAction, User
from auth.sessions import LOCK_STRIPES, SessionConfig, SessionManager
from auth.store import SessionStore, open_engine

SECRET = "session-test-secret-0123456789abcdef01234"
IP = "203.0.113.10"


@pytest.fixture
def users() -> dict[str, User]:
    return {
        "u1": User(id="u1", email="alice@example.com"),
        "u2": User(id="u2", email="bob@example.com"),
    }


@pytest.fixture
def make_manager(session_store, clock, users):
    def factory(**config) -> SessionManager:
        return SessionManager(session_store, users.get, SessionConfig(**config), clock=clock, secret_key=SECRET)

    return factory


@pytest.fixture
def manager(make_manager) -> SessionManager:
    return make_manager()


class TestCreate:
    def test_token_shape_and_expiry(self, manager, users, clock):
        created = manager.create_session(users["u1"], IP, "pytest")
        assert re.fullmatch(r"[0-9a-f]{64}", created.session_token)
        assert created.expires == clock() + timedelta(hours=24)
        assert created.cookie_options.http_only is True

    def test_token_stored_only_as_hash(self, manager, users):
        created = manager.create_session(users["u1"])
        session = manager.get_session(created.session_token)
        assert session is not None
        assert session.token_hash != created.session_token
        assert session.user_id == "u1"

    def test_records_client_details(self, manager, users):
        created = manager.create_session(users["u1"], IP, "Mozilla/5.0")
        session = manager.get_session(created.session_token)
        assert session.ip_address == IP
        assert session.user_agent == "Mozilla/5.0"


class TestValidate:
    def test_valid_session(self, manager, users):
        created = manager.create_session(users["u1"], IP)
        result = manager.validate_session(created.session_token, IP)
        assert result.valid is True
        assert result.action is SessionAction.REFRESH
        assert result.user.email == "alice@example.com"
        assert result.session_id == manager.get_session(created.session_token).id

    @pytest.mark.parametrize("token, reason", [(None, "missing"), ("", "missing"), ("f" * 64, "unknown")])
    def test_missing_or_unknown(self, manager, token, reason):
        result = manager.validate_session(token)
        assert result.valid is False
        assert result.action is SessionAction.REJECT
        assert result.reason == reason

    def test_inactivity_timeout(self, manager, users, clock):
        created = manager.create_session(users["u1"])
        clock.advance(minutes=61)
        result = manager.validate_session(created.session_token)
        assert result.reason == "inactivity"
        assert manager.get_session(created.session_token).ended_reason == "inactivity"

    def test_activity_keeps_session_alive(self, manager, users, clock):
        created = manager.create_session(users["u1"])
        for _ in range(4):
            clock.advance(minutes=50)
            assert manager.validate_session(created.session_token).valid is True

    def test_absolute_expiry(self, make_manager, users, clock):
        manager = make_manager(max_age_seconds=30 * 60, sliding_expiry=False)
        created = manager.create_session(users["u1"])
        clock.advance(minutes=30)
        result = manager.validate_session(created.session_token)
        assert result.reason == "expired"
        assert manager.get_session(created.session_token).ended_reason == "timeout"

    def test_deleted_user_rejects_session(self, manager, users):
        created = manager.create_session(users["u1"])
        del users["u1"]
        result = manager.validate_session(created.session_token)
        assert result.reason == "user_missing"
        assert manager.get_session(created.session_token).is_active is False


class TestSlidingExpiry:
    def test_validation_extends_expiry(self, manager, users, clock):
        created = manager.create_session(users["u1"])
        clock.advance(minutes=30)
        result = manager.validate_session(created.session_token)
        assert result.expires == clock() + timedelta(hours=24)
        assert result.expires > created.expires

    def test_disabled_sliding_keeps_expiry(self, make_manager, users, clock):
        manager = make_manager(sliding_expiry=False)
        created = manager.create_session(users["u1"])
        clock.advance(minutes=30)
        assert manager.validate_session(created.session_token).expires == created.expires

    def test_lifetime_ceiling_and_expiring_action(self, make_manager, users, clock):
        manager = make_manager(max_age_seconds=3600, inactivity_timeout_seconds=3600, max_lifetime_factor=2)
        start = clock()
        created = manager.create_session(users["u1"])

        clock.advance(minutes=50)
        assert manager.validate_session(created.session_token).expires == start + timedelta(minutes=110)

        clock.advance(minutes=50)
        result = manager.validate_session(created.session_token)
        assert result.expires == start + timedelta(hours=2)
        assert result.action is SessionAction.REFRESH

        clock.advance(minutes=16)
        result = manager.validate_session(created.session_token)
        assert result.valid is True
        assert result.action is SessionAction.EXPIRING

        clock.advance(minutes=4)
        assert manager.validate_session(created.session_token).reason == "expired"


class TestConcurrentLimit:
    def test_oldest_session_is_evicted(self, manager, users, clock):
        tokens = []
        for _ in range(4):
            tokens.append(manager.create_session(users["u1"]).session_token)
            clock.advance(minutes=1)

        assert manager.validate_session(tokens[0]).reason == "inactive"
        assert manager.get_session(tokens[0]).ended_reason == "concurrent_limit"
        assert all(manager.validate_session(t).valid for t in tokens[1:])
        assert len(manager.get_user_sessions("u1")) == 3

    def test_limit_is_per_user(self, manager, users):
        for _ in range(3):
            manager.create_session(users["u1"])
        bob = manager.create_session(users["u2"])
        assert manager.validate_session(bob.session_token).valid is True
        assert len(manager.get_user_sessions("u1")) == 3

    def test_idle_sessions_retired_before_counting(self, manager, users, clock):
        old = [manager.create_session(users["u1"]).session_token for _ in range(2)]
        clock.advance(hours=2)
        fresh = [manager.create_session(users["u1"]).session_token for _ in range(2)]
        assert all(manager.get_session(t).ended_reason == "inactivity" for t in old)
        assert all(manager.validate_session(t).valid for t in fresh)

    def test_concurrent_sign_ins_respect_cap(self, tmp_path, clock, users):
        engine = open_engine(f"sqlite:///{tmp_path / 'sessions.db'}")
        manager = SessionManager(SessionStore(engine), users.get, SessionConfig(), clock=clock, secret_key=SECRET)
        barrier = threading.Barrier(10)

        def sign_in():
            barrier.wait()
            manager.create_session(users["u1"])

        threads = [threading.Thread(target=sign_in) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(manager.get_user_sessions("u1")) == 3
        engine.dispose()


class TestIpPolicy:
    def test_flag_reports_mismatch_but_allows(self, make_manager, users):
        manager = make_manager(ip_policy="flag")
        created = manager.create_session(users["u1"], IP)
        result = manager.validate_session(created.session_token, "198.51.100.1")
        assert result.valid is True
        assert result.ip_mismatch is True

    def test_reject_ends_session(self, make_manager, users):
        manager = make_manager(ip_policy="reject")
        created = manager.create_session(users["u1"], IP)
        result = manager.validate_session(created.session_token, "198.51.100.1")
        assert result.valid is False
        assert result.reason == "ip_mismatch"
        assert manager.validate_session(created.session_token, IP).reason == "inactive"

    def test_ignore_skips_comparison(self, make_manager, users):
        manager = make_manager(ip_policy="ignore")
        created = manager.create_session(users["u1"], IP)
        result = manager.validate_session(created.session_token, "198.51.100.1")
        assert result.valid is True
        assert result.ip_mismatch is False

    def test_unknown_request_ip_is_not_a_mismatch(self, make_manager, users):
        manager = make_manager(ip_policy="reject")
        created = manager.create_session(users["u1"], IP)
        assert manager.validate_session(created.session_token, None).valid is True


class TestEndingSessions:
    def test_destroy_session(self, manager, users):
        created = manager.create_session(users["u1"])
        manager.destroy_session(created.session_token)
        assert manager.validate_session(created.session_token).reason == "inactive"
        assert manager.get_session(created.session_token).ended_reason == "logout"

    def test_destroy_is_idempotent(self, manager, users):
        created = manager.create_session(users["u1"])
        manager.destroy_session(created.session_token)
        manager.destroy_session(created.session_token)
        manager.destroy_session(None)
        manager.destroy_session("f" * 64)

    def test_invalidate_all_but_one(self, manager, users):
        tokens = [manager.create_session(users["u1"]).session_token for _ in range(3)]
        ended = manager.invalidate_user_sessions("u1", "password_change", except_token=tokens[1])
        assert ended == 2
        assert manager.validate_session(tokens[1]).valid is True
        assert manager.get_session(tokens[0]).ended_reason == "password_change"

    def test_except_token_of_other_user_is_ignored(self, manager, users):
        mine = manager.create_session(users["u1"]).session_token
        theirs = manager.create_session(users["u2"]).session_token
        assert manager.invalidate_user_sessions("u1", except_token=theirs) == 1
        assert manager.validate_session(mine).valid is False
        assert manager.validate_session(theirs).valid is True

    def test_user_sessions_most_recent_first(self, manager, users, clock):
        first = manager.create_session(users["u1"]).session_token
        clock.advance(minutes=1)
        manager.create_session(users["u1"])
        clock.advance(minutes=1)
        manager.validate_session(first)
        sessions = manager.get_user_sessions("u1")
        assert sessions[0].id == manager.get_session(first).id

    def test_cleanup_deletes_ended_and_expired(self, make_manager, users, clock):
        manager = make_manager(max_age_seconds=600, sliding_expiry=False)
        ended = manager.create_session(users["u1"]).session_token
        manager.destroy_session(ended)
        expiring = manager.create_session(users["u1"]).session_token
        clock.advance(minutes=5)
        live = manager.create_session(users["u1"]).session_token
        clock.advance(minutes=6)

        assert manager.cleanup_expired_sessions() == 2
        assert manager.get_session(ended) is None
        assert manager.get_session(expiring) is None
        assert manager.get_session(live) is not None
        assert manager.cleanup_expired_sessions() == 0


class TestCookies:
    def test_cookie_string_attributes(self, manager, users):
        created = manager.create_session(users["u1"])
        cookie = manager.create_cookie_string(created.session_token, created.expires)
        assert cookie.startswith(f"auth_session={created.session_token}; ")
        for attr in ("Path=/", "Max-Age=86400", "HttpOnly", "SameSite=Strict", "Secure"):
            assert attr in cookie
        assert re.search(r"Expires=\w{3}, \d{2} \w{3} \d{4} \d{2}:\d{2}:\d{2} GMT", cookie)

    def test_clear_cookie(self, manager):
        cookie = manager.create_clear_cookie_string()
        assert cookie.startswith("auth_session=; ")
        assert "Max-Age=0" in cookie
        assert "Expires=Thu, 01 Jan 1970 00:00:00 GMT" in cookie

    def test_development_cookie_is_not_secure(self, make_manager, clock):
        manager = make_manager(secure_cookies=False, same_site="Lax", cookie_domain="example.com")
        cookie = manager.create_cookie_string("abc", clock() + timedelta(hours=1))
        assert "Secure" not in cookie
        assert "SameSite=Lax" in cookie
        assert "Domain=example.com" in cookie

    def test_cookie_config(self, manager):
        config = manager.get_cookie_config()
        assert config.name == "auth_session"
        assert config.options.http_only is True
        assert config.options.path == "/"

    def test_config_from_settings(self, settings_factory):
        prod = SessionConfig.from_settings(settings_factory(environment="production", debug=False))
        assert (prod.secure_cookies, prod.same_site) == (True, "Strict")
        dev = SessionConfig.from_settings(settings_factory(session_ip_policy="reject", max_concurrent_sessions=5))
        assert (dev.secure_cookies, dev.same_site) == (False, "Lax")
        assert dev.ip_policy == "reject"
        assert dev.max_concurrent_sessions == 5


def test_user_lock_table_does_not_grow(manager):
    locks = manager._user_locks
    for n in range(400):
        user = User(id=f"user-{n}", email=f"user{n}@example.com")
        manager.create_session(user)
        manager.invalidate_user_sessions(user.id)
    assert manager._user_locks is locks
    assert len(manager._user_locks) == LOCK_STRIPES
