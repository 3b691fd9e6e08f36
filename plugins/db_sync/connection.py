"""
Connection Descriptors

A ConnectionDescriptor is the single resolved form of "how to reach a
database": a dialect tag plus either structured settings or an opaque
connection URL/string. It is built once at the edge (HTTP request body or
Airflow connection) and never re-branched downstream.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit
import logging

from db_sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

POSTGRES = "postgres"
MSSQL = "mssql"

DIALECT_ALIASES = {
    "postgres": POSTGRES,
    "postgresql": POSTGRES,
    "pg": POSTGRES,
    "mssql": MSSQL,
    "sqlserver": MSSQL,
    "sql_server": MSSQL,
}

# Airflow conn_type -> dialect
AIRFLOW_CONN_TYPES = {
    "postgres": POSTGRES,
    "postgresql": POSTGRES,
    "mssql": MSSQL,
    "odbc": MSSQL,
}

DEFAULT_PORTS = {POSTGRES: 5432, MSSQL: 1433}


def normalize_dialect(name: Optional[str]) -> str:
    """Map a user-facing database type ('postgresql', 'mssql', ...) to a dialect tag."""
    if not name:
        raise ConfigurationError("Database type is required")
    key = str(name).strip().lower()
    if key not in DIALECT_ALIASES:
        raise ConfigurationError(
            f"Unsupported database type '{name}' (expected postgresql or mssql)"
        )
    return DIALECT_ALIASES[key]


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Immutable description of one database connection."""

    dialect: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    url: Optional[str] = field(default=None, repr=False)

    @property
    def uses_url(self) -> bool:
        return self.url is not None

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_PORTS[self.dialect]

    def describe(self) -> str:
        """Human-readable target for log lines (never includes credentials)."""
        if self.uses_url:
            parts = urlsplit(self.url) if "://" in self.url else None
            if parts and parts.hostname:
                return f"{self.dialect}://{parts.hostname}{parts.path or ''}"
            return f"{self.dialect} (connection string)"
        return f"{self.dialect}://{self.host}:{self.effective_port}/{self.database}"

    @classmethod
    def from_request(
        cls,
        db_type: Optional[str],
        config: Optional[Dict[str, Any]] = None,
        connection_url: Optional[str] = None,
    ) -> "ConnectionDescriptor":
        """
        Build a descriptor from the wire fields {dbType, config|connectionUrl}.

        Args:
            db_type: Database type name
            config: Structured settings (host, port, database, username/user, password)
            connection_url: Opaque connection URL or driver connection string

        Returns:
            Resolved ConnectionDescriptor

        Raises:
            ConfigurationError: If the type is unknown or connection details are missing
        """
        dialect = normalize_dialect(db_type)

        if connection_url:
            return cls(dialect=dialect, url=str(connection_url).strip())

        if not config:
            raise ConfigurationError("Connection details (config or connectionUrl) are required")

        host = config.get("host")
        database = config.get("database")
        if not host or not database:
            raise ConfigurationError("Connection config requires 'host' and 'database'")

        port = config.get("port")
        try:
            port = int(port) if port not in (None, "") else None
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port '{port}'")

        return cls(
            dialect=dialect,
            host=str(host),
            port=port,
            database=str(database),
            user=config.get("username") or config.get("user"),
            password=config.get("password"),
        )

    @classmethod
    def from_airflow_connection(cls, conn_id: str, db_type: Optional[str] = None) -> "ConnectionDescriptor":
        """
        Build a descriptor from an Airflow connection.

        Airflow stores the database name in the connection's ``schema`` field.
        The dialect is taken from ``db_type`` when given, otherwise from the
        connection type.
        """
        from airflow.hooks.base import BaseHook

        conn = BaseHook.get_connection(conn_id)

        if db_type:
            dialect = normalize_dialect(db_type)
        else:
            conn_type = (conn.conn_type or "").lower()
            if conn_type not in AIRFLOW_CONN_TYPES:
                raise ConfigurationError(
                    f"Cannot infer database type from connection '{conn_id}' (type '{conn.conn_type}')"
                )
            dialect = AIRFLOW_CONN_TYPES[conn_type]

        if not conn.host or not conn.schema:
            raise ConfigurationError(
                f"Connection '{conn_id}' must define a host and a database (schema field)"
            )

        return cls(
            dialect=dialect,
            host=conn.host,
            port=conn.port,
            database=conn.schema,
            user=conn.login,
            password=conn.password,
        )

    def to_request(self) -> Dict[str, Any]:
        """Render the dbType/config/connectionUrl wire fields for an agent request."""
        payload: Dict[str, Any] = {"dbType": "postgresql" if self.dialect == POSTGRES else "mssql"}
        if self.uses_url:
            payload["connectionUrl"] = self.url
        else:
            payload["config"] = {
                "host": self.host,
                "port": self.port,
                "database": self.database,
                "username": self.user,
                "password": self.password,
            }
        return payload
