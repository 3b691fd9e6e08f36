"""
Schema Introspection Module

This module reads table metadata (columns, primary key, existence, table
list) from a live connection and creates target tables from a source schema.
All SQL comes from the connection's Dialect.
"""

from typing import List, Optional
import logging

from db_sync.dialects import Dialect
from db_sync.errors import DatabaseError
from db_sync.models import ColumnDescriptor, PrimaryKey, TableSchema

logger = logging.getLogger(__name__)


class SchemaIntrospector:
    """Read and create table structure on one connection."""

    def __init__(self, dialect: Dialect, conn):
        """
        Initialize the introspector.

        Args:
            dialect: Dialect of the connected database
            conn: Open DB-API connection
        """
        self.dialect = dialect
        self.conn = conn

    def list_tables(self) -> List[str]:
        """Base table names in the connection's default schema, sorted."""
        sql, params = self.dialect.list_tables_query()
        rows = self.dialect.fetch_dicts(self.conn, sql, params)
        return [next(iter(row.values())) for row in rows]

    def get_schema(self, table_name: str) -> TableSchema:
        """
        Get the ordered column metadata of a table.

        Raises:
            DatabaseError: If the table does not exist or has no columns
        """
        sql, params = self.dialect.columns_query(table_name)
        rows = self.dialect.fetch_dicts(self.conn, sql, params)
        if not rows:
            raise DatabaseError(f"Table '{table_name}' not found or has no columns")

        schema = [ColumnDescriptor.from_dict({k.lower(): v for k, v in row.items()}) for row in rows]
        logger.debug(f"Table {table_name}: {len(schema)} columns")
        return schema

    def get_primary_key(self, table_name: str) -> PrimaryKey:
        """Primary key column names in key order; empty when there is none."""
        sql, params = self.dialect.primary_key_query(table_name)
        rows = self.dialect.fetch_dicts(self.conn, sql, params)
        return [next(iter(row.values())) for row in rows]

    def detect_primary_key(self, table_name: str) -> PrimaryKey:
        """
        Primary key lookup that degrades to "no key" on failure.

        Used where a missing key only changes the strategy (Merge falls back
        to Replace), so a failed lookup is logged rather than raised.
        """
        try:
            return self.get_primary_key(table_name)
        except DatabaseError as e:
            logger.warning(f"Primary key lookup failed for {table_name}: {e}")
            # The failed catalog query leaves the transaction aborted on PostgreSQL
            self.conn.rollback()
            return []

    def table_exists(self, table_name: str) -> bool:
        sql, params = self.dialect.table_exists_query(table_name)
        return bool(self.dialect.fetch_scalar(self.conn, sql, params))

    def create_table(
        self,
        table_name: str,
        source_schema: TableSchema,
        source_dialect: str,
        primary_key: Optional[PrimaryKey] = None,
    ) -> None:
        """
        Create the table from a source schema, mapping types across dialects.

        Args:
            table_name: Table to create
            source_schema: Column metadata from the source
            source_dialect: Dialect the schema was read from
            primary_key: Source primary key, added as a constraint when given
        """
        ddl = self.dialect.create_table_sql(table_name, source_schema, source_dialect, primary_key)
        logger.info(f"Creating table {table_name} ({len(source_schema)} columns)")
        logger.debug(ddl)

        cursor = self.conn.cursor()
        try:
            self.dialect.execute(cursor, ddl)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def ensure_table(
        self,
        table_name: str,
        source_schema: TableSchema,
        source_dialect: str,
        primary_key: Optional[PrimaryKey] = None,
    ) -> bool:
        """
        Create the table only if it does not already exist.

        Returns:
            True if the table was created by this call
        """
        if self.table_exists(table_name):
            logger.info(f"Table {table_name} already exists on target")
            return False
        self.create_table(table_name, source_schema, source_dialect, primary_key)
        return True
