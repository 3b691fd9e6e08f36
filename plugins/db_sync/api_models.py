"""
Request models for the agent HTTP API.

Wire fields are camelCase; models expose snake_case attributes through
aliases and accept either spelling.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from db_sync.connection import ConnectionDescriptor


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConnectionRequest(WireModel):
    """Database type plus structured config or a connection URL."""
    db_type: Optional[str] = Field(default=None, alias="dbType")
    config: Optional[Dict[str, Any]] = None
    connection_url: Optional[str] = Field(default=None, alias="connectionUrl")

    def descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor.from_request(self.db_type, self.config, self.connection_url)


class TableRequest(ConnectionRequest):
    table_name: str = Field(..., alias="tableName", min_length=1)


class GetDataRequest(TableRequest):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=5000, gt=0)


class CreateTableRequest(TableRequest):
    columns: List[Dict[str, Any]] = Field(..., alias="schema", min_length=1)
    source_db: str = Field(..., alias="sourceDB")
    primary_key: Optional[List[str]] = Field(default=None, alias="primaryKey")


class SyncDataRequest(TableRequest):
    data: List[Dict[str, Any]] = Field(default_factory=list)
    columns: Optional[List[str]] = None
    sync_strategy: Optional[str] = Field(default="replace", alias="syncStrategy")
    is_first_batch: bool = Field(default=False, alias="isFirstBatch")
    is_last_batch: bool = Field(default=False, alias="isLastBatch")
    target_schema: Optional[List[Dict[str, Any]]] = Field(default=None, alias="targetSchema")
    primary_key: Optional[List[str]] = Field(default=None, alias="primaryKey")


class ProxyRequest(WireModel):
    target_url: Optional[str] = Field(default=None, alias="targetUrl")
    method: str = "POST"
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    agent_auth_key: Optional[str] = Field(default=None, alias="agentAuthKey")


class OrchestrateRequest(WireModel):
    """Orchestration job: both sides, optional agents, tables and strategy."""
    source_db: Optional[str] = Field(default=None, alias="sourceDB")
    target_db: Optional[str] = Field(default=None, alias="targetDB")
    source_config: Optional[Dict[str, Any]] = Field(default=None, alias="sourceConfig")
    target_config: Optional[Dict[str, Any]] = Field(default=None, alias="targetConfig")
    source_connection_url: Optional[str] = Field(default=None, alias="sourceConnectionUrl")
    target_connection_url: Optional[str] = Field(default=None, alias="targetConnectionUrl")
    source_agent_url: Optional[str] = Field(default=None, alias="sourceAgentUrl")
    target_agent_url: Optional[str] = Field(default=None, alias="targetAgentUrl")
    tables: List[str] = Field(default_factory=list)
    sync_strategy: Optional[str] = Field(default="replace", alias="syncStrategy")
    batch_size: Optional[int] = Field(default=None, alias="batchSize")
    concurrent_tables: Optional[int] = Field(default=None, alias="concurrentTables")

    def source_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor.from_request(
            self.source_db, self.source_config, self.source_connection_url
        )

    def target_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor.from_request(
            self.target_db, self.target_config, self.target_connection_url
        )
