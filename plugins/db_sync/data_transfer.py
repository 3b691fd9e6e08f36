"""
Data Transfer Module

This module reads source rows in offset/limit pages and converts values in
both directions across the JSON wire:

- sanitize: driver values -> JSON-safe values (binary as a tagged base64
  string, temporal values as ISO text, Decimal/UUID as text)
- restore: JSON-safe values -> driver values, guided by the target column type
"""

from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List
from uuid import UUID
import base64
import binascii
import json
import logging
import math

from db_sync.connection import MSSQL
from db_sync.dialects import Dialect
from db_sync.errors import ConfigurationError, DataError
from db_sync.models import ColumnDescriptor, FetchedBatch

logger = logging.getLogger(__name__)

# Prefix tagging base64-encoded binary values on the wire
BINARY_PREFIX = "__BINARY_BASE64__"

DATE_TYPES = {"date"}
TIME_TYPES = {"time", "time without time zone", "time with time zone"}
DATETIME_TYPES = {
    "datetime", "datetime2", "smalldatetime",
    "timestamp", "timestamp without time zone",
}
DATETIME_OFFSET_TYPES = {"datetimeoffset", "timestamp with time zone"}
# Legacy datetime/smalldatetime reject literals with more than 3 fractional digits
MSSQL_TEXT_BOUND_TYPES = {"datetime2", "datetimeoffset"}
NUMERIC_TYPES = {"decimal", "numeric", "money", "smallmoney"}
BINARY_TYPES = {"binary", "varbinary", "image", "bytea"}


def sanitize_value(value: Any) -> Any:
    """
    Convert one driver value into a JSON-safe value.

    Binary values become BINARY_PREFIX + base64 so they survive the JSON hop
    and can be told apart from ordinary strings on the other side.
    """
    if value is None:
        return None

    if isinstance(value, (bytes, bytearray, memoryview)):
        return BINARY_PREFIX + base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        # Non-finite decimals have no JSON form
        return format(value, "f") if value.is_finite() else None
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)

    return value


def sanitize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: sanitize_value(value) for key, value in row.items()}


def sanitize_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [sanitize_row(row) for row in rows]


def _parse_iso(text: str, kind: str) -> Any:
    stripped = text.strip()
    if stripped.endswith(("Z", "z")):
        stripped = stripped[:-1] + "+00:00"

    if kind == "date":
        if "T" in stripped or " " in stripped:
            return datetime.fromisoformat(stripped).date()
        return date.fromisoformat(stripped)
    if kind == "time":
        return dt_time.fromisoformat(stripped)
    return datetime.fromisoformat(stripped)


def _bind_datetime(value: Any, base_type: str, dialect: str) -> Any:
    """
    pymssql renders datetime parameters with millisecond precision, so
    datetime2/datetimeoffset values are bound as ISO text to keep microseconds.
    """
    if dialect == MSSQL and base_type in MSSQL_TEXT_BOUND_TYPES and isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return value


def restore_value(value: Any, column: ColumnDescriptor, dialect: str) -> Any:
    """
    Convert one wire value into a value the target driver can bind.

    Args:
        value: Sanitized value from the wire
        column: Target column metadata
        dialect: Target dialect

    Returns:
        Driver-ready value

    Raises:
        DataError: If the value cannot be converted to the column's type
    """
    if value is None:
        return None

    if isinstance(value, str) and value.startswith(BINARY_PREFIX):
        try:
            return base64.b64decode(value[len(BINARY_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise DataError(f"Invalid binary value for column '{column.column_name}'") from e

    base_type = column.data_type.strip().lower()

    try:
        if base_type in DATE_TYPES:
            if isinstance(value, str):
                return _parse_iso(value, "date")
            if isinstance(value, datetime):
                return value.date()
            return value

        if base_type in TIME_TYPES:
            return _parse_iso(value, "time") if isinstance(value, str) else value

        if base_type in DATETIME_TYPES:
            # MSSQL 'timestamp' is a rowversion, not a date
            if dialect == MSSQL and base_type == "timestamp":
                return value
            parsed = _parse_iso(value, "datetime") if isinstance(value, str) else value
            if isinstance(parsed, datetime) and parsed.tzinfo is not None:
                # Same instant, expressed in UTC, for columns without an offset
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return _bind_datetime(parsed, base_type, dialect)

        if base_type in DATETIME_OFFSET_TYPES:
            parsed = _parse_iso(value, "datetime") if isinstance(value, str) else value
            return _bind_datetime(parsed, base_type, dialect)

        if base_type in NUMERIC_TYPES and isinstance(value, str):
            return Decimal(value)
    except (ValueError, InvalidOperation) as e:
        raise DataError(
            f"Cannot convert value {value!r} for column '{column.column_name}' ({column.data_type})"
        ) from e

    if base_type in BINARY_TYPES and isinstance(value, str):
        raise DataError(f"Column '{column.column_name}' expects binary data, got text")

    if dialect == MSSQL and base_type == "bit" and isinstance(value, bool):
        return 1 if value else 0

    return value


class BatchExtractor:
    """Read one page of a source table at a time."""

    def __init__(self, dialect: Dialect, conn):
        self.dialect = dialect
        self.conn = conn

    def count_rows(self, table_name: str) -> int:
        return int(self.dialect.fetch_scalar(self.conn, self.dialect.count_query(table_name)) or 0)

    def fetch_batch(self, table_name: str, offset: int, limit: int) -> FetchedBatch:
        """
        Fetch rows [offset, offset + limit) plus the table's current row count.

        Pages are taken in the engine's natural order, so concurrent writes to
        the source while a table is being read can shift rows between pages.

        Raises:
            ConfigurationError: If offset is negative or limit is not positive
        """
        if offset < 0:
            raise ConfigurationError(f"Offset must be >= 0, got {offset}")
        if limit <= 0:
            raise ConfigurationError(f"Limit must be > 0, got {limit}")

        total_count = self.count_rows(table_name)
        sql, params = self.dialect.page_query(table_name, offset, limit)
        rows = self.dialect.fetch_dicts(self.conn, sql, params)

        # Reads never leave a transaction open on the source
        self.conn.commit()

        batch = FetchedBatch(rows=sanitize_rows(rows), total_count=total_count, offset=offset, limit=limit)
        logger.debug(
            f"Fetched {len(rows)} rows from {table_name} "
            f"(batch {batch.batch_number}/{batch.total_batches}, offset {offset})"
        )
        return batch
