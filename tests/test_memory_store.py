"""Tests for the in-memory user repository and session store."""

from datetime import timedelta

import pytest

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import DeviceDescriptor, DeviceType, SessionRecord


@pytest.fixture
def user(store):
    return store.create_user("Jane@Example.com", "hash-1", name="Jane")


def new_session(user, clock, token="tok-1", fingerprint=None):
    device = DeviceDescriptor(type=DeviceType.DESKTOP, fingerprint=fingerprint) if fingerprint else None
    return SessionRecord.new(token, user.id, clock.now, device=device)


class TestUsers:
    def test_email_is_normalised(self, store, user):
        assert user.email == "jane@example.com"
        assert store.get_user_by_email(" JANE@example.com ").id == user.id

    def test_duplicate_email_rejected(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.create_user("jane@example.com")

    def test_returned_users_are_copies(self, store, user):
        fetched = store.get_user(user.id)
        fetched.failed_login_attempts = 99

        assert store.get_user(user.id).failed_login_attempts == 0

    def test_password_history_most_recent_first(self, store, user, clock):
        store.save_password_hash(user.id, "hash-2", clock.now)
        store.save_password_hash(user.id, "hash-3", clock.now)

        assert store.get_password_hash(user.id) == "hash-3"
        assert store.get_password_history(user.id, 2) == ["hash-3", "hash-2"]
        assert store.get_password_history(user.id, 10) == ["hash-3", "hash-2", "hash-1"]

    def test_failed_login_bookkeeping(self, store, user, clock):
        assert store.record_failed_login(user.id) == 1
        assert store.record_failed_login(user.id, lock_until=clock.now + timedelta(minutes=30)) == 2
        assert store.get_user(user.id).locked_until is not None

        store.reset_failed_logins(user.id)

        refreshed = store.get_user(user.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.locked_until is None

    def test_unknown_user_mutation(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.record_login("missing", clock.now)


class TestSessions:
    def test_revoke_is_compare_and_set(self, store, user, clock):
        store.create_session(new_session(user, clock))

        assert store.revoke_session("tok-1", "logout", clock.now) is True
        assert store.revoke_session("tok-1", "logout", clock.now) is False
        assert store.revoke_session("missing", "logout", clock.now) is False

    def test_revoked_sessions_leave_active_listings(self, store, user, clock):
        store.create_session(new_session(user, clock, "a", fingerprint="fp"))
        store.create_session(new_session(user, clock, "b", fingerprint="fp"))
        store.revoke_session("a", "logout", clock.now)

        assert [s.token for s in store.list_active_sessions(user.id)] == ["b"]
        assert [s.token for s in store.list_sessions_by_fingerprint(user.id, "fp")] == ["b"]
        assert [s.token for s in store.list_all_active_sessions()] == ["b"]
        assert {s.token for s in store.list_user_sessions(user.id)} == {"a", "b"}

    def test_duplicate_token_rejected(self, store, user, clock):
        store.create_session(new_session(user, clock))

        with pytest.raises(ConstraintViolation):
            store.create_session(new_session(user, clock))

    def test_touch_session(self, store, user, clock):
        store.create_session(new_session(user, clock))
        later = clock.advance(minutes=10)

        assert store.touch_session("tok-1", later) is True
        assert store.get_session("tok-1").last_accessed_at == later
        store.revoke_session("tok-1", "logout", later)
        assert store.touch_session("tok-1", later) is False
