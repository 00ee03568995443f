"""Tests for the in-process user and session store."""

from datetime import datetime, timedelta, timezone

import pytest

from edenauth.storage.errors import ConstraintViolation
from edenauth.storage.memory import MemoryStore
from edenauth.storage.models import Session


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "hash", "Alice", "Smith")


def _session(user_id, token="refresh-1", *, ttl_minutes=60, now=None):
    return Session.new(user_id, token, ttl_minutes=ttl_minutes, now=now)


class TestUsers:
    def test_create_user_defaults(self, user):
        assert user.id
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        assert user.last_login_at is None
        assert user.is_email_verified is False

    def test_duplicate_email_is_constraint_violation(self, store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("alice@example.com", "hash2", "A", "S")
        assert excinfo.value.field == "email"

    def test_email_uniqueness_ignores_case(self, store):
        store.create_user("Alice@Example.com", "hash", "Alice", "Smith")

        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com", "hash2", "A", "S")
        assert store.get_user_by_email("ALICE@example.COM").email == "Alice@Example.com"

    def test_update_password_hash(self, store, user):
        store.update_password_hash(user.id, "new-hash")

        assert store.get_user(user.id).password_hash == "new-hash"
        with pytest.raises(ValueError):
            store.update_password_hash(user.id, "")

    def test_lookups(self, store, user):
        assert store.get_user_by_email("alice@example.com").id == user.id
        assert store.get_user(user.id).email == "alice@example.com"
        assert store.get_user_by_email("bob@example.com") is None
        assert store.get_user("missing") is None

    def test_returned_users_are_copies(self, store, user):
        fetched = store.get_user(user.id)
        fetched.failed_login_attempts = 99

        assert store.get_user(user.id).failed_login_attempts == 0

    def test_update_login_outcome_partial(self, store, user):
        until = datetime.now(timezone.utc) + timedelta(minutes=15)
        store.update_login_outcome(user.id, 5, locked_until=until)

        updated = store.get_user(user.id)
        assert updated.failed_login_attempts == 5
        assert updated.locked_until == until
        assert updated.last_login_at is None

        # counter-only update leaves the lock untouched
        store.update_login_outcome(user.id, 6)
        assert store.get_user(user.id).locked_until == until

        now = datetime.now(timezone.utc)
        store.update_login_outcome(user.id, 0, locked_until=None, last_login_at=now)
        reset = store.get_user(user.id)
        assert reset.failed_login_attempts == 0
        assert reset.locked_until is None
        assert reset.last_login_at == now


class TestSessions:
    def test_create_and_find(self, store, user):
        store.create_session(_session(user.id))

        found = store.get_session_by_refresh_token("refresh-1")
        assert found is not None
        assert found.user_id == user.id

    def test_session_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(_session("no-such-user"))

    def test_refresh_token_is_unique(self, store, user):
        store.create_session(_session(user.id))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_session(_session(user.id))
        assert excinfo.value.field == "refresh_token"

    def test_expired_session_is_not_returned(self, store, user):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        store.create_session(_session(user.id, ttl_minutes=60, now=past))

        assert store.get_session_by_refresh_token("refresh-1") is None

    def test_delete_by_refresh_token_counts(self, store, user):
        store.create_session(_session(user.id))

        assert store.delete_session_by_refresh_token("refresh-1") == 1
        assert store.delete_session_by_refresh_token("refresh-1") == 0

    def test_delete_expired_sessions(self, store, user):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        store.create_session(_session(user.id, "old", ttl_minutes=60, now=past))
        store.create_session(_session(user.id, "live"))

        assert store.delete_expired_sessions() == 1
        assert store.get_session_by_refresh_token("live") is not None
        assert store.delete_expired_sessions() == 0


def test_state_survives_restart(tmp_path):
    first = MemoryStore(fs_root=str(tmp_path))
    user = first.create_user("alice@example.com", "hash", "Alice", "Smith")
    until = datetime.now(timezone.utc) + timedelta(minutes=15)
    first.update_login_outcome(user.id, 5, locked_until=until)
    first.create_session(_session(user.id))

    second = MemoryStore(fs_root=str(tmp_path))

    restored = second.get_user_by_email("alice@example.com")
    assert restored.id == user.id
    assert restored.password_hash == "hash"
    assert restored.failed_login_attempts == 5
    assert restored.locked_until == until
    assert second.get_session_by_refresh_token("refresh-1").user_id == user.id


def test_corrupt_state_file_is_fatal(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")

    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path))
