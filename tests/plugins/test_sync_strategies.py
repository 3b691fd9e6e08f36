"""
Tests for the Sync Strategies Module

These tests validate Replace and Merge batch writes, their transaction
handling, value conversion and the primary key fallback.
"""

import logging
from unittest.mock import MagicMock

import psycopg2
import pymssql
import pytest
from db_sync.dialects import MssqlDialect, PostgresDialect
from db_sync.errors import ConfigurationError, DatabaseError, DataError
from db_sync.models import ColumnDescriptor, SyncStrategy
from db_sync.sync_strategies import SyncExecutor, resolve_strategy

SCHEMA = [
    ColumnDescriptor("id", "integer", is_nullable=False),
    ColumnDescriptor("name", "text"),
    ColumnDescriptor("photo", "bytea"),
]
COLUMNS = ["id", "name", "photo"]


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    cursor = MagicMock()
    cursor.rowcount = 3
    conn.cursor.return_value = cursor
    return conn, cursor


def executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


class TestResolveStrategy:
    def test_merge_with_key(self):
        assert resolve_strategy(SyncStrategy.MERGE, ["id"], "t") == SyncStrategy.MERGE

    def test_merge_without_key_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING, logger="db_sync.sync_strategies"):
            assert resolve_strategy(SyncStrategy.MERGE, [], "t") == SyncStrategy.REPLACE
        assert "falling back to replace" in caplog.text

    def test_replace_unchanged(self):
        assert resolve_strategy(SyncStrategy.REPLACE, [], "t") == SyncStrategy.REPLACE


class TestReplace:
    """Test the Replace strategy."""

    def test_first_batch_deletes_then_inserts(self, mock_conn):
        conn, cursor = mock_conn
        rows = [{"id": 1, "name": "a", "photo": None}, {"id": 2, "name": "b", "photo": None}]

        result = SyncExecutor(PostgresDialect(), conn).replace("users", rows, COLUMNS, SCHEMA, True)

        statements = executed_sql(cursor)
        assert statements[0] == 'DELETE FROM "users"'
        assert statements[1].startswith('INSERT INTO "users" ("id", "name", "photo") VALUES')
        assert (result.deleted, result.inserted) == (3, 2)
        conn.commit.assert_called_once()

    def test_later_batches_do_not_delete(self, mock_conn):
        conn, cursor = mock_conn
        rows = [{"id": 3, "name": "c", "photo": None}]

        result = SyncExecutor(PostgresDialect(), conn).replace("users", rows, COLUMNS, SCHEMA, False)

        assert not any(s.startswith("DELETE") for s in executed_sql(cursor))
        assert result.deleted == 0
        assert result.inserted == 1

    def test_empty_source_still_clears_target(self, mock_conn):
        conn, cursor = mock_conn

        result = SyncExecutor(PostgresDialect(), conn).replace("users", [], COLUMNS, SCHEMA, True)

        assert executed_sql(cursor) == ['DELETE FROM "users"']
        assert result.deleted == 3
        conn.commit.assert_called_once()

    def test_chunks_of_1000(self, mock_conn):
        conn, cursor = mock_conn
        rows = [{"id": i, "name": "x", "photo": None} for i in range(2500)]

        result = SyncExecutor(PostgresDialect(), conn).replace("users", rows, COLUMNS, SCHEMA, False)

        assert cursor.execute.call_count == 3
        assert result.inserted == 2500

    def test_values_converted_for_target(self, mock_conn):
        conn, cursor = mock_conn
        rows = [{"id": 1, "name": "a", "photo": "__BINARY_BASE64__AAE="}]

        SyncExecutor(PostgresDialect(), conn).replace("users", rows, COLUMNS, SCHEMA, False)

        assert cursor.execute.call_args.args[1] == (1, "a", b"\x00\x01")

    def test_failure_rolls_back(self, mock_conn):
        conn, cursor = mock_conn
        cursor.execute.side_effect = [None, psycopg2.Error("null value in column \"id\"")]
        rows = [{"id": None, "name": "a", "photo": None}]

        with pytest.raises(DatabaseError):
            SyncExecutor(PostgresDialect(), conn).replace("users", rows, COLUMNS, SCHEMA, True)

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_unknown_target_column(self, mock_conn):
        conn, cursor = mock_conn

        with pytest.raises(DataError, match="not found in target"):
            SyncExecutor(PostgresDialect(), conn).replace(
                "users", [{"extra": 1}], ["extra"], SCHEMA, True
            )
        cursor.execute.assert_not_called()

    def test_identity_insert_on_mssql(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("id",)
        schema = [ColumnDescriptor("id", "int"), ColumnDescriptor("name", "nvarchar")]

        SyncExecutor(MssqlDialect(), conn).replace("users", [{"id": 1, "name": "a"}], ["id", "name"], schema, False)

        statements = executed_sql(cursor)
        assert "SET IDENTITY_INSERT [users] ON" in statements
        assert statements[-1] == "SET IDENTITY_INSERT [users] OFF"

    def test_identity_insert_switched_off_after_failed_insert(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("id",)
        schema = [ColumnDescriptor("id", "int"), ColumnDescriptor("name", "nvarchar")]

        def execute(sql, params=None):
            if sql.startswith("INSERT"):
                raise pymssql.IntegrityError("Violation of PRIMARY KEY constraint")

        cursor.execute.side_effect = execute

        with pytest.raises(DatabaseError):
            SyncExecutor(MssqlDialect(), conn).replace(
                "users", [{"id": 1, "name": "a"}], ["id", "name"], schema, False
            )

        statements = executed_sql(cursor)
        assert statements[-1] == "SET IDENTITY_INSERT [users] OFF"
        conn.rollback.assert_called_once()


class TestMerge:
    """Test the Merge strategy."""

    def test_upsert_counts(self, mock_conn):
        """Target has id=1; source has id=1 (changed) and id=2 (new)."""
        conn, cursor = mock_conn
        cursor.fetchall.return_value = [(False,), (True,)]
        rows = [{"id": 1, "name": "changed", "photo": None}, {"id": 2, "name": "new", "photo": None}]

        result = SyncExecutor(PostgresDialect(), conn).merge("users", rows, COLUMNS, SCHEMA, ["id"])

        assert result.to_dict() == {"inserted": 1, "updated": 1, "deleted": 0, "skipped": 0}
        assert not any(s.startswith("DELETE") for s in executed_sql(cursor))
        conn.commit.assert_called_once()

    def test_requires_primary_key(self, mock_conn):
        conn, _ = mock_conn
        with pytest.raises(ConfigurationError, match="Cannot use merge strategy"):
            SyncExecutor(PostgresDialect(), conn).merge("users", [], COLUMNS, SCHEMA, [])

    def test_key_must_be_in_columns(self, mock_conn):
        conn, _ = mock_conn
        with pytest.raises(ConfigurationError):
            SyncExecutor(PostgresDialect(), conn).merge("users", [], ["name"], SCHEMA, ["id"])

    def test_empty_batch_is_noop(self, mock_conn):
        conn, cursor = mock_conn
        result = SyncExecutor(PostgresDialect(), conn).merge("users", [], COLUMNS, SCHEMA, ["id"])
        assert result.affected == 0
        cursor.execute.assert_not_called()

    def test_failure_rolls_back(self, mock_conn):
        conn, cursor = mock_conn
        cursor.execute.side_effect = psycopg2.Error("deadlock detected")

        with pytest.raises(DatabaseError):
            SyncExecutor(PostgresDialect(), conn).merge(
                "users", [{"id": 1, "name": "a", "photo": None}], COLUMNS, SCHEMA, ["id"]
            )
        conn.rollback.assert_called_once()


class TestSync:
    def test_dispatches_on_strategy(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchall.return_value = [(True,)]
        executor = SyncExecutor(PostgresDialect(), conn)
        rows = [{"id": 1, "name": "a", "photo": None}]

        merged = executor.sync("users", rows, COLUMNS, SyncStrategy.MERGE, SCHEMA, ["id"], True)
        assert merged.inserted == 1
        assert merged.deleted == 0

        replaced = executor.sync("users", rows, COLUMNS, SyncStrategy.REPLACE, SCHEMA, None, True)
        assert replaced.deleted == 3
