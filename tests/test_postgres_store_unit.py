from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from familyhub.storage.errors import ConstraintViolation
from familyhub.storage.models import EmailTokenType, MemberRole, OAuthProvider
from familyhub.storage.postgres import REQUIRED_TABLES, PostgresStore

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Replays scripted results; each entry is a cursor or an exception."""

    def __init__(self, script):
        self.script = script
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.script.pop(0) if self.script else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, script=None):
        self.conn = FakeConnection(list(script or []))

    @contextmanager
    def connection(self):
        yield self.conn


def make_store(script=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(script)
    store.dsn = "postgresql://unused"
    return store


def user_row(**overrides):
    row = {
        "id": "u1",
        "email": "owner@example.com",
        "name": "Owners",
        "email_verified": False,
        "default_locale": "de",
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_create_user_normalizes_email():
    store = make_store([FakeCursor([user_row()])])
    user = store.create_user("  Owner@Example.com ", "Owners", default_locale="de")

    assert user.id == "u1"
    assert user.default_locale == "de"
    sql, params = store.pool.conn.statements[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[1] == "owner@example.com"


def test_duplicate_email_maps_to_constraint_violation():
    store = make_store([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("owner@example.com", "Owners")
    assert excinfo.value.field == "email"


def test_duplicate_identity_maps_to_provider_account():
    store = make_store([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_oauth_account("u1", OAuthProvider.GOOGLE, "g-1")
    assert excinfo.value.field == "provider_account"


def test_missing_user_for_identity():
    store = make_store([errors.ForeignKeyViolation("fk")])
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_oauth_account("ghost", "google", "g-1")
    assert excinfo.value.field == "user_id"


def test_token_consumption_is_conditional():
    store = make_store([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    assert store.mark_email_token_used("t1", NOW) is True
    assert store.mark_email_token_used("t1", NOW) is False
    sql, _ = store.pool.conn.statements[0]
    assert "used_at IS NULL" in sql


def test_email_token_metadata_decoded():
    row = {
        "id": "t1",
        "user_id": "u1",
        "token_hash": "h",
        "type": "email_change",
        "expires_at": NOW,
        "used_at": None,
        "metadata": '{"new_email": "new@example.com"}',
        "created_at": NOW,
    }
    token = PostgresStore._row_to_email_token(row)
    assert token.type == EmailTokenType.EMAIL_CHANGE
    assert token.metadata == {"new_email": "new@example.com"}


def test_member_row_defaults():
    member = PostgresStore._row_to_member(
        {
            "id": "m1",
            "family_id": "u1",
            "name": "Alex",
            "role": None,
            "pin_hash": None,
            "locale": None,
            "color": None,
            "created_at": NOW,
        }
    )
    assert member.role == MemberRole.MEMBER
    assert member.color == "#3b82f6"


def test_schema_check_reports_missing_tables():
    script = [FakeCursor([{"oid": "x"}]) for _ in REQUIRED_TABLES]
    script[-1] = FakeCursor([{"oid": None}])
    store = make_store(script)
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert REQUIRED_TABLES[-1] in str(excinfo.value)


def test_login_attempts_query_orders_and_limits():
    row = {
        "id": "a1",
        "user_id": "u1",
        "email": "owner@example.com",
        "ip_address": "203.0.113.9",
        "user_agent": None,
        "success": False,
        "failure_reason": "INVALID_PASSWORD",
        "created_at": NOW,
    }
    store = make_store([FakeCursor([row])])
    (attempt,) = store.list_login_attempts("u1", limit=5)

    assert attempt.failure_reason == "INVALID_PASSWORD"
    sql, params = store.pool.conn.statements[0]
    assert "ORDER BY created_at DESC" in sql
    assert params == ("u1", 5)


def test_session_delete_scoped_and_rejects_malformed_id():
    store = make_store([FakeCursor(rowcount=1)])
    assert store.delete_user_active_session("u1", "not-a-uuid") is False
    assert store.pool.conn.statements == []

    session_id = "3f1c2a9e-0d4b-4c6e-9a8b-2b7e5d1f0c11"
    assert store.delete_user_active_session("u1", session_id) is True
    sql, params = store.pool.conn.statements[0]
    assert "user_id = %s" in sql
    assert params == (session_id, "u1")


def test_active_session_row_mapping():
    record = PostgresStore._row_to_active_session(
        {
            "id": "s1",
            "user_id": "u1",
            "member_id": None,
            "session_token": "tok",
            "ip_address": None,
            "user_agent": "pytest",
            "expires_at": NOW,
            "created_at": NOW,
        }
    )
    assert record.member_id is None
    assert record.user_agent == "pytest"
