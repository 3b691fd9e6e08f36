"""
Cross-Database Sync DAG

This DAG replicates tables between PostgreSQL and SQL Server in either
direction:

1. Resolve the table list (all source tables when none are given)
2. Synchronize tables in groups (create missing target tables, then transfer
   rows in batches with the Replace or Merge strategy)
3. Report per-table results and fail the run if any table failed

Source and target are Airflow connections. When an agent URL is set for a
side, that side is reached through the remote database agent instead of a
direct connection.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import List, Dict, Any
import fnmatch
import logging

from db_sync.agent_client import AgentTransport
from db_sync.config import get_settings
from db_sync.connection import ConnectionDescriptor
from db_sync.endpoints import build_endpoint
from db_sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

# Defaults from SYNC_BATCH_SIZE / CONCURRENT_TABLES; invalid values fall back
_settings = get_settings()
DEFAULT_BATCH_SIZE = _settings.batch_size
DEFAULT_CONCURRENT_TABLES = _settings.concurrent_tables


def build_orchestrator(params: Dict[str, Any], transport=None) -> SyncOrchestrator:
    """Resolve both Airflow connections and build an orchestrator from DAG params."""
    settings = get_settings()
    source = ConnectionDescriptor.from_airflow_connection(
        params["source_conn_id"], params.get("source_db_type") or None
    )
    target = ConnectionDescriptor.from_airflow_connection(
        params["target_conn_id"], params.get("target_db_type") or None
    )
    return SyncOrchestrator(
        build_endpoint(source, params.get("source_agent_url") or None, transport, settings),
        build_endpoint(target, params.get("target_agent_url") or None, transport, settings),
        strategy=params["sync_strategy"],
        batch_size=params["batch_size"],
        concurrent_tables=params["concurrent_tables"],
        settings=settings,
    )


def filter_tables(tables: List[str], exclude_patterns: List[str]) -> List[str]:
    """Drop tables matching any exclude pattern (shell-style wildcards)."""
    return [
        t for t in tables
        if not any(fnmatch.fnmatch(t, pattern) for pattern in exclude_patterns)
    ]


def uses_agent(params: Dict[str, Any]) -> bool:
    return bool(params.get("source_agent_url") or params.get("target_agent_url"))


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or on schedule
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 1,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="Source connection ID (PostgreSQL or SQL Server)"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="Target connection ID (PostgreSQL or SQL Server)"
        ),
        "source_db_type": Param(
            default="",
            type="string",
            description="Source database type (postgresql/mssql); inferred from the connection if empty"
        ),
        "target_db_type": Param(
            default="",
            type="string",
            description="Target database type (postgresql/mssql); inferred from the connection if empty"
        ),
        "source_agent_url": Param(
            default="",
            type="string",
            description="Agent URL for the source (empty = connect directly)"
        ),
        "target_agent_url": Param(
            default="",
            type="string",
            description="Agent URL for the target (empty = connect directly)"
        ),
        "tables": Param(
            default=[],
            type="array",
            description="Tables to sync (if empty, all source tables)"
        ),
        "exclude_tables": Param(
            default=[],
            type="array",
            description="Table patterns to exclude"
        ),
        "sync_strategy": Param(
            default="replace",
            type="string",
            enum=["replace", "merge"],
            description="replace: delete and reload; merge: upsert by primary key"
        ),
        "batch_size": Param(
            default=DEFAULT_BATCH_SIZE,
            type="integer",
            minimum=1,
            maximum=100000,
            description="Rows per batch"
        ),
        "concurrent_tables": Param(
            default=DEFAULT_CONCURRENT_TABLES,
            type="integer",
            minimum=1,
            maximum=32,
            description="Tables synchronized at the same time"
        ),
        "fail_on_table_error": Param(
            default=True,
            type="boolean",
            description="Fail the run when any table fails"
        ),
    },
    tags=["sync", "mssql", "postgres", "etl"],
)
def cross_database_sync():
    """
    Replicate tables between PostgreSQL and SQL Server.
    """

    @task
    def resolve_tables(**context) -> List[str]:
        """
        Determine the tables to synchronize.

        Returns:
            Table names, in the order they will be processed
        """
        params = context["params"]
        tables = list(params["tables"])

        if not tables:
            transport = AgentTransport() if uses_agent(params) else None
            try:
                tables = build_orchestrator(params, transport).list_source_tables()
            finally:
                if transport is not None:
                    transport.close()
            logger.info(f"Discovered {len(tables)} source tables")

        tables = filter_tables(tables, params["exclude_tables"])
        logger.info(f"Tables to sync: {', '.join(tables) if tables else '(none)'}")
        return tables

    @task
    def sync_tables(tables: List[str], **context) -> Dict[str, Any]:
        """
        Run the sync job for the resolved tables.

        Returns:
            Job result with per-table detail and summary
        """
        params = context["params"]
        if not tables:
            logger.warning("No tables to sync")
            return {"success": True, "results": [], "summary": {"totalTables": 0, "failureCount": 0}}

        transport = AgentTransport() if uses_agent(params) else None
        try:
            return build_orchestrator(params, transport).run(tables).to_dict()
        finally:
            if transport is not None:
                transport.close()

    @task
    def report(job: Dict[str, Any], **context) -> str:
        """
        Log a per-table report and fail the run on table failures when requested.
        """
        from airflow.exceptions import AirflowException

        params = context["params"]
        summary = job["summary"]

        lines = ["Sync report:"]
        for result in job["results"]:
            status = "OK" if result["success"] else "FAILED"
            lines.append(
                f"  {result['table']}: {status} ({result['strategy']}) "
                f"inserted={result['rowsInserted']} updated={result['rowsUpdated']} "
                f"deleted={result['rowsDeleted']} duration={result['duration']}ms"
            )
            if not result["success"]:
                lines.append(f"    error: {result.get('error')}")
        lines.append(
            f"  {summary.get('successCount', 0)}/{summary['totalTables']} tables succeeded"
        )
        report_text = "\n".join(lines)
        logger.info(report_text)

        if summary["failureCount"] and params["fail_on_table_error"]:
            raise AirflowException(f"{summary['failureCount']} table(s) failed to sync")
        return report_text

    report(sync_tables(resolve_tables()))


cross_database_sync()
