"""
Dialect Interface

A Dialect owns everything that differs between database engines: identifier
quoting, driver connection, catalog queries, paging SQL, DDL rendering and the
native upsert. Call sites only talk to this interface, so a new engine is one
new subclass.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import contextlib
import logging

from db_sync.config import SyncSettings
from db_sync.connection import ConnectionDescriptor
from db_sync.errors import ConfigurationError, DatabaseError
from db_sync.models import BatchResult, ColumnDescriptor, PrimaryKey, TableSchema
from db_sync.type_mapping import map_column_type, native_type

logger = logging.getLogger(__name__)

# Identifiers longer than this are rejected by both engines
MAX_IDENTIFIER_LENGTH = 128


class Dialect(ABC):
    """Engine-specific SQL and driver behaviour."""

    name: str = ""

    # Most bind parameters one statement may carry
    max_parameters: int = 2100

    # Rows per multi-row INSERT (Replace) and per upsert statement (Merge)
    replace_chunk_size: int = 1000
    merge_chunk_size: int = 500

    # Paramstyle shared by psycopg2 and pymssql
    placeholder: str = "%s"

    # Driver exception base classes wrapped into DatabaseError
    driver_errors: Tuple[type, ...] = ()

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def quote_identifier(self, identifier: str) -> str:
        """
        Quote a table or column name for this dialect.

        All user-supplied names flow through here before reaching SQL text.
        Both drivers substitute parameters with Python %-formatting, so a
        literal '%' cannot be carried safely and is rejected.
        """
        if not identifier or not isinstance(identifier, str):
            raise ConfigurationError("Identifier cannot be empty")
        if len(identifier) > MAX_IDENTIFIER_LENGTH:
            raise ConfigurationError(
                f"Identifier '{identifier[:32]}...' exceeds {MAX_IDENTIFIER_LENGTH} characters"
            )
        if "\x00" in identifier or "%" in identifier:
            raise ConfigurationError(f"Identifier {identifier!r} contains unsupported characters")
        return self._quote(identifier)

    @abstractmethod
    def _quote(self, identifier: str) -> str:
        """Wrap an already validated identifier in the dialect's delimiters."""

    def quote_columns(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_identifier(c) for c in columns)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @abstractmethod
    def connect(self, descriptor: ConnectionDescriptor, settings: SyncSettings):
        """Open a new DB-API connection with autocommit off."""

    @contextlib.contextmanager
    def connection(self, descriptor: ConnectionDescriptor, settings: SyncSettings) -> Iterator[Any]:
        """
        Scoped connection: rolled back if a transaction is left open and
        always closed, on success and failure alike.
        """
        conn = self.connect(descriptor, settings)
        logger.debug(f"Opened connection to {descriptor.describe()}")
        try:
            yield conn
        finally:
            try:
                conn.rollback()
            except Exception:
                logger.exception("Exception occurred during connection rollback")
            try:
                conn.close()
            except Exception:
                logger.exception("Exception occurred while closing connection")

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def execute(self, cursor, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        """Execute one statement, wrapping driver failures in DatabaseError."""
        try:
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
        except self.driver_errors as e:
            logger.error(f"Error executing statement: {e}")
            logger.error(f"SQL: {sql[:500]}")
            if params:
                logger.error(f"Parameters: {len(params)} bound values")
            raise DatabaseError(str(e).strip() or e.__class__.__name__) from e

    def fetch_dicts(self, conn, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a query and return rows as dicts keyed by column name."""
        cursor = conn.cursor()
        try:
            self.execute(cursor, sql, params)
            columns = [d[0] for d in cursor.description or []]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def fetch_scalar(self, conn, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        cursor = conn.cursor()
        try:
            self.execute(cursor, sql, params)
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # Catalog queries: each returns (sql, params)
    # ------------------------------------------------------------------

    @abstractmethod
    def columns_query(self, table_name: str) -> Tuple[str, List[Any]]:
        """Columns of a table ordered by ordinal position, in the wire field names."""

    @abstractmethod
    def primary_key_query(self, table_name: str) -> Tuple[str, List[Any]]:
        """Primary key column names in key order (single column result)."""

    @abstractmethod
    def table_exists_query(self, table_name: str) -> Tuple[str, List[Any]]:
        """Single truthy/falsy value."""

    @abstractmethod
    def list_tables_query(self) -> Tuple[str, List[Any]]:
        """Base table names, sorted."""

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def count_query(self, table_name: str) -> str:
        return f"SELECT COUNT(*) FROM {self.quote_identifier(table_name)}"

    @abstractmethod
    def page_query(self, table_name: str, offset: int, limit: int) -> Tuple[str, List[Any]]:
        """SELECT * for one page of rows."""

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    not_null_clause = "NOT NULL"
    null_clause = ""

    def column_definition(self, column: ColumnDescriptor, source_dialect: str) -> str:
        """Render one CREATE TABLE column from a source column."""
        data_type = map_column_type(column, source_dialect, self.name)
        nullability = self.null_clause if column.is_nullable else self.not_null_clause
        return " ".join(
            part for part in (self.quote_identifier(column.column_name), data_type, nullability) if part
        )

    def native_column_type(self, column: ColumnDescriptor) -> str:
        """Render a column of this dialect's own schema verbatim."""
        return native_type(
            column.data_type,
            self.name,
            column.character_maximum_length,
            column.numeric_precision,
            column.numeric_scale,
        )

    def create_table_sql(
        self,
        table_name: str,
        source_schema: TableSchema,
        source_dialect: str,
        primary_key: Optional[PrimaryKey] = None,
    ) -> str:
        """
        Generate CREATE TABLE for the target from a source schema.

        The primary key constraint is only added when every key column is part
        of the schema.
        """
        if not source_schema:
            raise ConfigurationError(f"Cannot create table '{table_name}' without columns")

        definitions = [self.column_definition(col, source_dialect) for col in source_schema]

        column_names = {col.column_name for col in source_schema}
        if primary_key and all(pk in column_names for pk in primary_key):
            constraint = self.quote_identifier(f"pk_{table_name}"[:MAX_IDENTIFIER_LENGTH])
            definitions.append(f"CONSTRAINT {constraint} PRIMARY KEY ({self.quote_columns(primary_key)})")

        return f"CREATE TABLE {self.quote_identifier(table_name)} ({', '.join(definitions)})"

    # ------------------------------------------------------------------
    # DML
    # ------------------------------------------------------------------

    def delete_all_sql(self, table_name: str) -> str:
        return f"DELETE FROM {self.quote_identifier(table_name)}"

    def insert_sql(self, table_name: str, columns: Sequence[str], row_count: int) -> str:
        """Multi-row INSERT with one placeholder per value."""
        row_placeholder = "(" + ", ".join([self.placeholder] * len(columns)) + ")"
        values = ", ".join([row_placeholder] * row_count)
        return (
            f"INSERT INTO {self.quote_identifier(table_name)} "
            f"({self.quote_columns(columns)}) VALUES {values}"
        )

    def chunk_size(self, column_count: int, cap: int) -> int:
        """Rows per statement, bounded by ``cap`` and the bind-parameter limit."""
        if column_count <= 0:
            return cap
        return max(1, min(cap, (self.max_parameters - 1) // column_count))

    @contextlib.contextmanager
    def insert_guard(self, cursor, table_name: str, columns: Sequence[str]) -> Iterator[None]:
        """Hook wrapped around explicit-value inserts into the target table."""
        yield

    @abstractmethod
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
        Insert-or-update rows keyed on the primary key inside the caller's
        transaction. Never deletes target rows.
        """


def chunked(rows: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]
