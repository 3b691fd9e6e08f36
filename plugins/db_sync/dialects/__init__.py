"""
Database dialects.

Dialect instances are stateless, so one shared instance per engine is enough.
"""

from db_sync.connection import MSSQL, POSTGRES, normalize_dialect
from db_sync.dialects.base import Dialect
from db_sync.dialects.mssql import MssqlDialect
from db_sync.dialects.postgres import PostgresDialect

_DIALECTS = {
    POSTGRES: PostgresDialect(),
    MSSQL: MssqlDialect(),
}


def get_dialect(name: str) -> Dialect:
    """Return the dialect for a dialect tag or any accepted database type alias."""
    return _DIALECTS[normalize_dialect(name)]


__all__ = ["Dialect", "MssqlDialect", "PostgresDialect", "get_dialect"]
