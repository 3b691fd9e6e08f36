"""
PostgreSQL Dialect

psycopg2 connections, double-quote identifiers, information_schema/pg_index
introspection and INSERT ... ON CONFLICT upserts.
"""

from typing import Any, List, Sequence, Tuple
import logging

import psycopg2

from db_sync.config import SyncSettings
from db_sync.connection import POSTGRES, ConnectionDescriptor
from db_sync.dialects.base import Dialect, chunked
from db_sync.errors import ConnectivityError
from db_sync.models import BatchResult, PrimaryKey, TableSchema

logger = logging.getLogger(__name__)


class PostgresDialect(Dialect):
    name = POSTGRES
    max_parameters = 65535
    driver_errors = (psycopg2.Error,)

    def _quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def connect(self, descriptor: ConnectionDescriptor, settings: SyncSettings):
        options = f"-c statement_timeout={settings.db_query_timeout * 1000}"
        try:
            if descriptor.uses_url:
                conn = psycopg2.connect(
                    descriptor.url,
                    connect_timeout=settings.db_connect_timeout,
                    options=options,
                )
            else:
                conn = psycopg2.connect(
                    host=descriptor.host,
                    port=descriptor.effective_port,
                    dbname=descriptor.database,
                    user=descriptor.user,
                    password=descriptor.password,
                    connect_timeout=settings.db_connect_timeout,
                    options=options,
                )
        except psycopg2.Error as e:
            raise ConnectivityError(
                f"Failed to connect to {descriptor.describe()}", str(e).strip()
            ) from e
        conn.autocommit = False
        return conn

    def columns_query(self, table_name: str) -> Tuple[str, List[Any]]:
        return (
            """
            SELECT column_name, data_type, character_maximum_length, is_nullable,
                   numeric_precision, numeric_scale
            FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            ORDER BY ordinal_position
            """,
            [table_name],
        )

    def primary_key_query(self, table_name: str) -> Tuple[str, List[Any]]:
        # to_regclass returns NULL instead of raising for a missing table
        return (
            """
            SELECT a.attname
            FROM pg_index i
            JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
            WHERE i.indrelid = to_regclass(%s) AND i.indisprimary
            ORDER BY array_position(i.indkey::int2[], a.attnum)
            """,
            [self.quote_identifier(table_name)],
        )

    def table_exists_query(self, table_name: str) -> Tuple[str, List[Any]]:
        return (
            """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = current_schema() AND table_name = %s
            )
            """,
            [table_name],
        )

    def list_tables_query(self) -> Tuple[str, List[Any]]:
        return (
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = current_schema() AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """,
            [],
        )

    def page_query(self, table_name: str, offset: int, limit: int) -> Tuple[str, List[Any]]:
        return (
            f"SELECT * FROM {self.quote_identifier(table_name)} LIMIT %s OFFSET %s",
            [limit, offset],
        )

    def upsert(
        self,
        cursor,
        table_name: str,
        columns: Sequence[str],
        rows: List[Tuple[Any, ...]],
        primary_key: PrimaryKey,
        target_schema: TableSchema,
    ) -> BatchResult:
        """
        Upsert rows using INSERT...ON CONFLICT.

        The xmax system column tells inserts from updates:
        - xmax = 0 means the row was inserted
        - xmax > 0 means the row was updated

        When every column is part of the key there is nothing to update, so
        conflicts are ignored and counted as skipped.
        """
        result = BatchResult()
        if not rows:
            return result

        non_pk_columns = [c for c in columns if c not in primary_key]
        pk_cols = self.quote_columns(primary_key)

        if non_pk_columns:
            update_set = ", ".join(
                f"{self.quote_identifier(c)} = EXCLUDED.{self.quote_identifier(c)}"
                for c in non_pk_columns
            )
            conflict = f"ON CONFLICT ({pk_cols}) DO UPDATE SET {update_set}"
        else:
            conflict = f"ON CONFLICT ({pk_cols}) DO NOTHING"

        size = self.chunk_size(len(columns), self.merge_chunk_size)
        for chunk in chunked(rows, size):
            query = (
                f"{self.insert_sql(table_name, columns, len(chunk))} "
                f"{conflict} RETURNING (xmax = 0) AS inserted"
            )
            params = [value for row in chunk for value in row]
            self.execute(cursor, query, params)

            returned = cursor.fetchall()
            inserted = sum(1 for r in returned if r[0])
            result.inserted += inserted
            result.updated += len(returned) - inserted
            result.skipped += len(chunk) - len(returned)

        return result
