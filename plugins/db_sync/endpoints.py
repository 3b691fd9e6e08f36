"""
Sync Endpoints

An endpoint is one side of a sync job (source or target). It is either a
database reached directly or a remote agent reached over HTTP; both expose
the same session interface so the orchestrator never branches on which one
it has.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import contextlib
import logging

from db_sync.agent_client import AgentTransport
from db_sync.config import SyncSettings, get_settings
from db_sync.connection import ConnectionDescriptor
from db_sync.data_transfer import BatchExtractor
from db_sync.dialects import get_dialect
from db_sync.errors import DataError
from db_sync.models import (
    BatchResult,
    FetchedBatch,
    PrimaryKey,
    SyncStrategy,
    TableSchema,
    schema_from_wire,
    schema_to_wire,
)
from db_sync.schema_extractor import SchemaIntrospector
from db_sync.sync_strategies import SyncExecutor

logger = logging.getLogger(__name__)

AGENT_ROUTES = {
    "fetch_tables": "/api/db-agent/source/fetch-tables",
    "get_schema": "/api/db-agent/source/get-schema",
    "get_data": "/api/db-agent/source/get-data",
    "create_table": "/api/db-agent/target/create-table",
    "sync_data": "/api/db-agent/target/sync-data",
}


class DatabaseSession:
    """Operations on one open database connection."""

    def __init__(self, descriptor: ConnectionDescriptor, conn):
        self.descriptor = descriptor
        self.dialect = get_dialect(descriptor.dialect)
        self.conn = conn
        self.introspector = SchemaIntrospector(self.dialect, conn)
        self.extractor = BatchExtractor(self.dialect, conn)
        self.executor = SyncExecutor(self.dialect, conn)

    def list_tables(self) -> List[str]:
        return self.introspector.list_tables()

    def describe(self, table_name: str) -> Tuple[TableSchema, PrimaryKey]:
        """Column metadata and primary key; a failed key lookup yields no key."""
        schema = self.introspector.get_schema(table_name)
        return schema, self.introspector.detect_primary_key(table_name)

    def ensure_table(
        self,
        table_name: str,
        source_schema: TableSchema,
        source_dialect: str,
        primary_key: Optional[PrimaryKey] = None,
    ) -> bool:
        return self.introspector.ensure_table(table_name, source_schema, source_dialect, primary_key)

    def fetch_batch(self, table_name: str, offset: int, limit: int) -> FetchedBatch:
        return self.extractor.fetch_batch(table_name, offset, limit)

    def write_batch(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        strategy: SyncStrategy,
        is_first_batch: bool,
        is_last_batch: bool,
        target_schema: TableSchema,
        primary_key: PrimaryKey,
    ) -> BatchResult:
        return self.executor.sync(
            table_name, rows, columns, strategy, target_schema, primary_key, is_first_batch
        )


class AgentSession:
    """The same operations, performed by a remote agent."""

    def __init__(self, agent_url: str, descriptor: ConnectionDescriptor, transport: AgentTransport):
        self.agent_url = agent_url.rstrip("/")
        self.descriptor = descriptor
        self.transport = transport

    def _call(self, route: str, **fields) -> Dict[str, Any]:
        body = self.descriptor.to_request()
        body.update(fields)
        return self.transport.post(f"{self.agent_url}{AGENT_ROUTES[route]}", body)

    def list_tables(self) -> List[str]:
        return list(self._call("fetch_tables").get("tables") or [])

    def describe(self, table_name: str) -> Tuple[TableSchema, PrimaryKey]:
        data = self._call("get_schema", tableName=table_name)
        schema = schema_from_wire(data.get("schema"))
        if not schema:
            raise DataError(f"Agent returned no columns for table '{table_name}'")
        return schema, list(data.get("primaryKey") or [])

    def ensure_table(
        self,
        table_name: str,
        source_schema: TableSchema,
        source_dialect: str,
        primary_key: Optional[PrimaryKey] = None,
    ) -> bool:
        data = self._call(
            "create_table",
            tableName=table_name,
            schema=schema_to_wire(source_schema),
            sourceDB=source_dialect,
            primaryKey=primary_key or None,
        )
        return bool(data.get("tableCreated"))

    def fetch_batch(self, table_name: str, offset: int, limit: int) -> FetchedBatch:
        data = self._call("get_data", tableName=table_name, offset=offset, limit=limit)
        return FetchedBatch.from_dict(data)

    def write_batch(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        strategy: SyncStrategy,
        is_first_batch: bool,
        is_last_batch: bool,
        target_schema: TableSchema,
        primary_key: PrimaryKey,
    ) -> BatchResult:
        data = self._call(
            "sync_data",
            tableName=table_name,
            data=rows,
            columns=list(columns),
            syncStrategy=strategy.value,
            isFirstBatch=is_first_batch,
            isLastBatch=is_last_batch,
            targetSchema=schema_to_wire(target_schema),
            primaryKey=primary_key,
        )
        return BatchResult.from_dict(data)


class LocalEndpoint:
    """A database this process connects to directly."""

    def __init__(self, descriptor: ConnectionDescriptor, settings: Optional[SyncSettings] = None):
        self.descriptor = descriptor
        self.settings = settings or get_settings()

    @property
    def dialect(self) -> str:
        return self.descriptor.dialect

    @contextlib.contextmanager
    def session(self) -> Iterator[DatabaseSession]:
        """One connection, released on every exit path."""
        dialect = get_dialect(self.descriptor.dialect)
        with dialect.connection(self.descriptor, self.settings) as conn:
            yield DatabaseSession(self.descriptor, conn)


class AgentEndpoint:
    """A database behind a remote agent."""

    def __init__(self, agent_url: str, descriptor: ConnectionDescriptor, transport: AgentTransport):
        self.agent_url = agent_url
        self.descriptor = descriptor
        self.transport = transport

    @property
    def dialect(self) -> str:
        return self.descriptor.dialect

    @contextlib.contextmanager
    def session(self) -> Iterator[AgentSession]:
        yield AgentSession(self.agent_url, self.descriptor, self.transport)


def build_endpoint(
    descriptor: ConnectionDescriptor,
    agent_url: Optional[str] = None,
    transport: Optional[AgentTransport] = None,
    settings: Optional[SyncSettings] = None,
):
    """Agent endpoint when an agent URL is given, otherwise a direct connection."""
    if agent_url:
        if transport is None:
            transport = AgentTransport(settings=settings)
        logger.info(f"Using agent {agent_url} for {descriptor.describe()}")
        return AgentEndpoint(agent_url, descriptor, transport)
    return LocalEndpoint(descriptor, settings)
