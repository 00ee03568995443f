import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from edenauth.logging import get_logger
from edenauth.storage.errors import ConstraintViolation
from edenauth.storage.models import Session
from edenauth.storage.postgres import _SCHEMA_STATEMENTS, PostgresStore, _parse_uuid


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    """Records every statement and replays queued results in order."""

    def __init__(self, results=None, raises=None):
        self.executed = []
        self._results = list(results or [])
        self._raises = raises

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self._raises is not None:
            raise self._raises
        if self._results:
            return self._results.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "alice@example.com",
        "first_name": "Alice",
        "last_name": "Smith",
        "password_hash": "$argon2id$fake",
        "created_at": now,
        "updated_at": now,
        "last_login_at": None,
        "is_email_verified": False,
        "failed_login_attempts": 0,
        "locked_until": None,
    }
    row.update(overrides)
    return row


def test_parse_uuid():
    value = uuid.uuid4()
    assert _parse_uuid(str(value)) == str(value)
    assert _parse_uuid("not-a-uuid") is None
    assert _parse_uuid(None) is None


def test_ensure_schema_runs_every_statement():
    conn = FakeConnection()
    store = _store(FakePool(conn))

    store._ensure_schema()

    assert len(conn.executed) == len(_SCHEMA_STATEMENTS)
    assert any("lower(email)" in sql for sql, _ in conn.executed)
    assert any("ON DELETE CASCADE" in sql for sql, _ in conn.executed)


def test_malformed_user_id_skips_database():
    store = _store(DummyPool())

    assert store.get_user("not-a-uuid") is None
    store.update_login_outcome("not-a-uuid", 1)


def test_get_user_maps_row():
    row = _user_row(failed_login_attempts=3)
    store = _store(FakePool(FakeConnection([FakeCursor(row)])))

    user = store.get_user(str(row["id"]))

    assert user.id == str(row["id"])
    assert user.failed_login_attempts == 3
    assert user.password_hash == "$argon2id$fake"


def test_get_user_by_email_is_case_insensitive_query():
    conn = FakeConnection([FakeCursor(None)])
    store = _store(FakePool(conn))

    assert store.get_user_by_email("Alice@Example.com") is None
    sql, params = conn.executed[0]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("Alice@Example.com",)


def test_create_user_unique_violation_maps_to_email_conflict():
    store = _store(FakePool(FakeConnection(raises=errors.UniqueViolation("duplicate"))))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice@example.com", "hash", "Alice", "Smith")
    assert excinfo.value.field == "email"


class TestUpdateLoginOutcome:
    def test_counter_only(self):
        conn = FakeConnection()
        store = _store(FakePool(conn))
        user_id = str(uuid.uuid4())

        store.update_login_outcome(user_id, 2)

        sql, params = conn.executed[0]
        assert "locked_until" not in sql
        assert "last_login_at" not in sql
        assert params == (2, user_id)

    def test_success_resets_lock_and_stamps_login(self):
        conn = FakeConnection()
        store = _store(FakePool(conn))
        user_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        store.update_login_outcome(user_id, 0, locked_until=None, last_login_at=now)

        sql, params = conn.executed[0]
        assert "locked_until = %s" in sql
        assert "last_login_at = %s" in sql
        assert params == (0, None, now, user_id)


def test_session_lookup_filters_expired():
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    row = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "refresh_token": "tok",
        "created_at": now,
        "expires_at": now + timedelta(days=30),
        "user_agent": "pytest",
        "ip_address": "127.0.0.1",
    }
    conn = FakeConnection([FakeCursor(row)])
    store = _store(FakePool(conn))

    session = store.get_session_by_refresh_token("tok", now=now)

    assert session.user_id == str(user_id)
    sql, params = conn.executed[0]
    assert "expires_at > %s" in sql
    assert params == ("tok", now)


def test_create_session_foreign_key_violation():
    store = _store(
        FakePool(FakeConnection(raises=errors.ForeignKeyViolation("missing user")))
    )

    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new(str(uuid.uuid4()), "tok"))


def test_deletes_report_rowcount():
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=4)])
    store = _store(FakePool(conn))

    assert store.delete_session_by_refresh_token("tok") == 1
    assert store.delete_expired_sessions() == 4


def test_close_closes_pool():
    pool = FakePool(FakeConnection())
    _store(pool).close()
    assert pool.closed is True


def test_update_password_hash():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    user_id = str(uuid.uuid4())

    store.update_password_hash(user_id, "$argon2id$new")

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE app_user SET password_hash = %s")
    assert params == ("$argon2id$new", user_id)


def test_update_password_hash_malformed_id_skips_database():
    _store(DummyPool()).update_password_hash("not-a-uuid", "$argon2id$new")
