"""Unit tests for PostgresStore SQL paths without a live database."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
from psycopg import errors

from tokenchain.storage.common import MAX_CHAIN_LENGTH
from tokenchain.storage.errors import AlreadyRevoked, ConstraintViolation
from tokenchain.storage.postgres import PostgresStore

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row: Optional[dict] = None, rows: Optional[list] = None, rowcount: int = 0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Records every statement; responses are queued per call."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.statements: List[tuple] = []
        self.transactions = 0

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


def create_test_store(conn: FakeConnection) -> PostgresStore:
    """Create a PostgresStore instance for testing without database."""
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.clock = lambda: FIXED_NOW
    store.logger = None

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _token_row(**overrides) -> dict:
    row = {
        "id": "7f0c1e9e-0000-4000-8000-000000000001",
        "user_id": "user-1",
        "token": "value-1",
        "created_at": datetime(2026, 1, 1, 11, 0),
        "expires_at": datetime(2026, 1, 8, 11, 0),
        "revoked_at": None,
        "replaced_by_token": None,
        "compromised_at": None,
    }
    row.update(overrides)
    return row


class TestConditionalRevoke:
    def test_revoke_and_link_is_single_conditional_update(self):
        conn = FakeConnection([FakeCursor(row={"id": "t1", "user_id": "user-1"})])
        store = create_test_store(conn)

        store.revoke_and_link("t1", "child-value")

        assert len(conn.statements) == 1
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE refresh_tokens")
        assert "WHERE id = %s AND revoked_at IS NULL" in sql
        assert params == (FIXED_NOW, "child-value", "t1")

    def test_revoke_and_link_raises_when_no_row_updated(self):
        conn = FakeConnection([FakeCursor(row=None)])
        store = create_test_store(conn)

        with pytest.raises(AlreadyRevoked):
            store.revoke_and_link("t1", "child-value")

    def test_rotate_revokes_and_inserts_in_one_transaction(self):
        conn = FakeConnection([FakeCursor(row={"id": "t1", "user_id": "user-1"}), FakeCursor()])
        store = create_test_store(conn)

        child = store.rotate("t1", "child-value", timedelta(days=7))

        assert conn.transactions == 1
        assert conn.statements[0][0].startswith("UPDATE refresh_tokens")
        assert conn.statements[1][0].startswith("INSERT INTO refresh_tokens")
        assert child.user_id == "user-1"
        assert child.token_value == "child-value"
        assert child.expires_at == FIXED_NOW + timedelta(days=7)

    def test_rotate_lost_race_inserts_nothing(self):
        conn = FakeConnection([FakeCursor(row=None)])
        store = create_test_store(conn)

        with pytest.raises(AlreadyRevoked):
            store.rotate("t1", "child-value", timedelta(days=7))

        assert len(conn.statements) == 1


class TestInsert:
    def test_unique_violation_maps_to_constraint_violation(self):
        conn = FakeConnection([errors.UniqueViolation("duplicate key")])
        store = create_test_store(conn)

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create("user-1", timedelta(days=7), token_value="dup")
        assert exc_info.value.detail == {"field": "token"}


class TestReads:
    def test_find_by_value_treats_naive_timestamps_as_utc(self):
        conn = FakeConnection([FakeCursor(row=_token_row())])
        store = create_test_store(conn)

        token = store.find_by_value("value-1")

        assert token.token_value == "value-1"
        assert token.issued_at.tzinfo is not None
        assert token.revoked_at is None
        assert conn.statements[0][1] == ("value-1",)

    def test_find_by_value_missing(self):
        store = create_test_store(FakeConnection([FakeCursor(row=None)]))
        assert store.find_by_value("nope") is None

    def test_list_active_only_filters_in_sql(self):
        conn = FakeConnection([FakeCursor(rows=[_token_row()])])
        store = create_test_store(conn)

        tokens = store.list_refresh_tokens("user-1", active_only=True)

        sql, params = conn.statements[0]
        assert "revoked_at IS NULL AND expires_at > %s" in sql
        assert params == ["user-1", FIXED_NOW]
        assert [t.id for t in tokens] == ["7f0c1e9e-0000-4000-8000-000000000001"]

    def test_password_algo_inferred_from_hash(self):
        conn = FakeConnection([FakeCursor(row={"password_hash": "$argon2id$v=19$abc"})])
        store = create_test_store(conn)

        assert store.get_password_record("user-1") == ("$argon2id$v=19$abc", "argon2id")


class TestBulkRevocation:
    def test_revoke_all_for_user_returns_rowcount(self):
        conn = FakeConnection([FakeCursor(rowcount=3)])
        store = create_test_store(conn)

        assert store.revoke_all_for_user("user-1") == 3
        sql, params = conn.statements[0]
        assert "revoked_at IS NULL" in sql
        assert params == (FIXED_NOW, "user-1", FIXED_NOW)

    def test_revoke_chain_from_only_marks_unmarked_members(self):
        conn = FakeConnection([FakeCursor(rowcount=2), FakeCursor(rowcount=0)])
        store = create_test_store(conn)

        assert store.revoke_chain_from("root-id") == 2
        sql, params = conn.statements[0]
        assert params == ("root-id", MAX_CHAIN_LENGTH, FIXED_NOW, FIXED_NOW)
        assert "WITH RECURSIVE chain" in sql
        assert "COALESCE(t.revoked_at, %s)" in sql
        assert "t.compromised_at IS NULL" in sql

    def test_revoke_chain_repeats_until_nothing_is_marked(self):
        """A child committed while the first pass waited is caught by a later pass."""
        conn = FakeConnection(
            [FakeCursor(rowcount=2), FakeCursor(rowcount=1), FakeCursor(rowcount=0)]
        )
        store = create_test_store(conn)

        assert store.revoke_chain_from("root-id") == 3
        assert len(conn.statements) == 3
        assert len({sql for sql, _ in conn.statements}) == 1
        assert conn.transactions == 1

    def test_revoke_chain_on_fully_marked_chain_runs_one_pass(self):
        conn = FakeConnection([FakeCursor(rowcount=0)])
        store = create_test_store(conn)

        assert store.revoke_chain_from("root-id") == 0
        assert len(conn.statements) == 1

    def test_purge_expired_deletes_before_cutoff(self):
        conn = FakeConnection([FakeCursor(rowcount=5)])
        store = create_test_store(conn)

        assert store.purge_expired(FIXED_NOW) == 5
        assert conn.statements[0] == (
            "DELETE FROM refresh_tokens WHERE expires_at < %s",
            (FIXED_NOW,),
        )
