"""
Cross-Database Sync Utilities

This package replicates tables between PostgreSQL and Microsoft SQL Server,
in either direction, either by connecting to both databases directly or by
talking to remote database agents over HTTP.

Modules:
- type_mapping: Map column types between dialects
- dialects: Engine-specific SQL, quoting and upserts (PostgreSQL, SQL Server)
- schema_extractor: Read table metadata and create target tables
- data_transfer: Batched extraction and wire value conversion
- sync_strategies: Replace and Merge batch writers
- orchestrator: Per-table pipelines with bounded table concurrency
- agent_client: HTTP transport to remote agents with retries
- agent_api: FastAPI service exposing the agent routes

Configuration (environment or .env):
- SYNC_BATCH_SIZE=N: Rows per batch (default 5000)
- CONCURRENT_TABLES=N: Tables synchronized at once (default 5)
- AGENT_AUTH_KEY: Shared secret for agent requests
"""

__version__ = "1.0.0"

# Core modules
from db_sync import errors
from db_sync import config
from db_sync import models
from db_sync import type_mapping
from db_sync import dialects
from db_sync import schema_extractor
from db_sync import data_transfer
from db_sync import sync_strategies

# Remote agents and orchestration
from db_sync import agent_client
from db_sync import endpoints
from db_sync import orchestrator

# The HTTP service is imported on demand (it builds the app at import time)
# from db_sync import agent_api

__all__ = [
    "errors",
    "config",
    "models",
    "type_mapping",
    "dialects",
    "schema_extractor",
    "data_transfer",
    "sync_strategies",
    "agent_client",
    "endpoints",
    "orchestrator",
]
