"""
Cross-Dialect Type Mapping Module

This module translates column types between SQL Server and PostgreSQL in both
directions. Each direction is a fixed lookup table; unknown types fall back to
the target dialect's widest practical text type. When source and target share
a dialect the source type is rendered verbatim (with its length, precision
and scale) instead of round-tripping through the tables.
"""

from typing import Optional
import logging
import re

from db_sync.connection import MSSQL, POSTGRES
from db_sync.models import ColumnDescriptor

logger = logging.getLogger(__name__)


# SQL Server -> PostgreSQL
MSSQL_TO_POSTGRES = {
    # Exact Numeric Types
    "bit": "BOOLEAN",
    "tinyint": "SMALLINT",
    "smallint": "SMALLINT",
    "int": "INTEGER",
    "bigint": "BIGINT",
    "decimal": "NUMERIC({precision},{scale})",
    "numeric": "NUMERIC({precision},{scale})",
    "money": "NUMERIC(19,4)",
    "smallmoney": "NUMERIC(10,4)",

    # Approximate Numeric Types
    "float": "DOUBLE PRECISION",
    "real": "REAL",

    # Character String Types (INFORMATION_SCHEMA lengths are in characters)
    "char": "CHAR({length})",
    "varchar": "VARCHAR({length})",
    "text": "TEXT",
    "nchar": "CHAR({length})",
    "nvarchar": "VARCHAR({length})",
    "ntext": "TEXT",

    # Binary String Types
    "binary": "BYTEA",
    "varbinary": "BYTEA",
    "image": "BYTEA",

    # Date and Time Types
    "date": "DATE",
    "time": "TIME",
    "datetime": "TIMESTAMP(3)",
    "datetime2": "TIMESTAMP",
    "smalldatetime": "TIMESTAMP(0)",
    "datetimeoffset": "TIMESTAMP WITH TIME ZONE",

    # Other Data Types
    "uniqueidentifier": "UUID",
    "xml": "XML",
    "sql_variant": "TEXT",  # No direct equivalent
    "hierarchyid": "VARCHAR(4000)",
    "timestamp": "BYTEA",  # SQL Server timestamp is a rowversion
    "rowversion": "BYTEA",
    "sysname": "VARCHAR(128)",
}

# PostgreSQL -> SQL Server
POSTGRES_TO_MSSQL = {
    # Numeric Types
    "smallint": "SMALLINT",
    "integer": "INT",
    "bigint": "BIGINT",
    "numeric": "DECIMAL({precision},{scale})",
    "decimal": "DECIMAL({precision},{scale})",
    "real": "REAL",
    "double precision": "FLOAT",
    "money": "MONEY",

    # Character Types
    "character varying": "NVARCHAR({length})",
    "varchar": "NVARCHAR({length})",
    "character": "NCHAR({length})",
    "char": "NCHAR({length})",
    "text": "NVARCHAR(MAX)",
    "citext": "NVARCHAR(MAX)",
    "name": "NVARCHAR(128)",

    # Binary / Boolean
    "bytea": "VARBINARY(MAX)",
    "boolean": "BIT",

    # Date and Time Types
    "date": "DATE",
    "time": "TIME",
    "time without time zone": "TIME",
    "timestamp": "DATETIME2",
    "timestamp without time zone": "DATETIME2",
    "timestamp with time zone": "DATETIMEOFFSET",

    # Other Data Types
    "json": "NVARCHAR(MAX)",
    "jsonb": "NVARCHAR(MAX)",
    "uuid": "UNIQUEIDENTIFIER",
    "xml": "XML",
    "inet": "NVARCHAR(45)",
    "cidr": "NVARCHAR(45)",
    "macaddr": "NVARCHAR(17)",
}

TYPE_MAPPINGS = {
    (MSSQL, POSTGRES): MSSQL_TO_POSTGRES,
    (POSTGRES, MSSQL): POSTGRES_TO_MSSQL,
}

# Widest practical text type per target dialect
FALLBACK_TYPES = {
    POSTGRES: "TEXT",
    MSSQL: "NVARCHAR(MAX)",
}

# Replacement when a length placeholder cannot be filled with a bounded length
UNBOUNDED_TYPES = {
    "VARCHAR({length})": "TEXT",
    "CHAR({length})": "TEXT",
    "NVARCHAR({length})": "NVARCHAR(MAX)",
    "NCHAR({length})": "NVARCHAR(MAX)",
}

# Longest bounded length each target accepts for character columns
MAX_BOUNDED_LENGTH = {
    POSTGRES: 10485760,
    MSSQL: 4000,
}

# Precision/scale used when an unconstrained numeric crosses into SQL Server
DEFAULT_DECIMAL = (38, 10)

# SQL Server types whose catalog length is rendered in parentheses
MSSQL_LENGTH_TYPES = {
    "NVARCHAR": 4000,
    "NCHAR": 4000,
    "VARCHAR": 8000,
    "CHAR": 8000,
    "VARBINARY": 8000,
    "BINARY": 8000,
}
MSSQL_VARIABLE_TYPES = {"NVARCHAR", "VARCHAR", "VARBINARY"}
MSSQL_FIXED_TO_VARIABLE = {
    "NCHAR": "NVARCHAR(MAX)",
    "CHAR": "VARCHAR(MAX)",
    "BINARY": "VARBINARY(MAX)",
}

POSTGRES_LENGTH_TYPES = {"character varying", "character", "bit", "bit varying"}
POSTGRES_UNRENDERABLE_TYPES = {"array", "user-defined"}


def normalize_type_name(data_type: str) -> str:
    """Lowercase a type name and drop any length suffix, e.g. 'NVARCHAR(50)' -> 'nvarchar'."""
    return re.sub(r"\s*\(.*\)\s*$", "", data_type.strip().lower())


def map_type(
    data_type: str,
    source_dialect: str,
    target_dialect: str,
    max_length: Optional[int] = None,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
) -> str:
    """
    Map a native type name from one dialect to the other.

    Args:
        data_type: Native type name in the source dialect
        source_dialect: Dialect the type comes from
        target_dialect: Dialect the type is needed in
        max_length: Character length (-1 means unbounded)
        precision: Numeric precision
        scale: Numeric scale

    Returns:
        Native type name in the target dialect
    """
    if source_dialect == target_dialect:
        return native_type(data_type, target_dialect, max_length, precision, scale)

    mapping = TYPE_MAPPINGS[(source_dialect, target_dialect)]
    base_type = normalize_type_name(data_type)

    if base_type not in mapping:
        fallback = FALLBACK_TYPES[target_dialect]
        logger.warning(
            f"Unknown {source_dialect} type '{data_type}', using {fallback} as fallback"
        )
        return fallback

    target_type = mapping[base_type]

    if "{length}" in target_type:
        bounded = (
            max_length is not None
            and 0 < max_length <= MAX_BOUNDED_LENGTH[target_dialect]
        )
        if bounded:
            target_type = target_type.replace("{length}", str(max_length))
        else:
            target_type = UNBOUNDED_TYPES[target_type]

    if "{precision}" in target_type:
        if precision is not None:
            target_type = target_type.replace("{precision}", str(precision))
            target_type = target_type.replace("{scale}", str(scale if scale is not None else 0))
        elif target_dialect == POSTGRES:
            # Unconstrained NUMERIC keeps every digit
            target_type = target_type.replace("({precision},{scale})", "")
        else:
            default_precision, default_scale = DEFAULT_DECIMAL
            target_type = target_type.replace("{precision}", str(default_precision))
            target_type = target_type.replace("{scale}", str(default_scale))

    return target_type


def native_type(
    data_type: str,
    dialect: str,
    max_length: Optional[int] = None,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
) -> str:
    """
    Render a type verbatim for its own dialect, re-attaching length or precision.

    Catalog views report the bare type name ('nvarchar', 'character varying')
    with the length in a separate column, so a faithful same-dialect copy has
    to put them back together.
    """
    if dialect == MSSQL:
        type_name = data_type.strip().upper()
        if type_name in MSSQL_LENGTH_TYPES:
            limit = MSSQL_LENGTH_TYPES[type_name]
            if max_length is not None and 0 < max_length <= limit:
                return f"{type_name}({max_length})"
            if type_name in MSSQL_VARIABLE_TYPES:
                return f"{type_name}(MAX)"
            # Fixed-width types have no MAX form; widen to the variable type
            return MSSQL_FIXED_TO_VARIABLE[type_name]
        if type_name in ("DECIMAL", "NUMERIC") and precision:
            return f"{type_name}({precision}, {scale if scale is not None else 0})"
        return type_name

    type_name = data_type.strip().lower()
    if type_name in POSTGRES_UNRENDERABLE_TYPES:
        logger.warning(f"Cannot render PostgreSQL type '{data_type}' verbatim, using TEXT")
        return "TEXT"
    if type_name in POSTGRES_LENGTH_TYPES and max_length:
        return f"{type_name}({max_length})"
    if type_name in ("numeric", "decimal") and precision:
        return f"{type_name}({precision},{scale if scale is not None else 0})"
    return type_name


def map_column_type(column: ColumnDescriptor, source_dialect: str, target_dialect: str) -> str:
    """Map the type of a ColumnDescriptor into the target dialect."""
    return map_type(
        column.data_type,
        source_dialect,
        target_dialect,
        max_length=column.character_maximum_length,
        precision=column.numeric_precision,
        scale=column.numeric_scale,
    )

