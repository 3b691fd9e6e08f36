"""
Tests for the Cross-Database Sync DAG

Validates DAG structure and parameters, table filtering, orchestrator
construction from Airflow connections and the failure report.
"""

import importlib
import os
import sys
from unittest.mock import patch

import pytest

pytest.importorskip("airflow")

from airflow.exceptions import AirflowException
from airflow.models import DagBag

DAGS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'dags'))
sys.path.insert(0, DAGS_DIR)

import cross_database_sync as sync_dag  # noqa: E402
from db_sync.config import get_settings  # noqa: E402
from db_sync.connection import MSSQL, POSTGRES, ConnectionDescriptor  # noqa: E402
from db_sync.endpoints import AgentEndpoint, LocalEndpoint  # noqa: E402
from db_sync.models import SyncStrategy  # noqa: E402

PARAMS = {
    "source_conn_id": "mssql_source",
    "target_conn_id": "postgres_target",
    "source_db_type": "",
    "target_db_type": "",
    "source_agent_url": "",
    "target_agent_url": "",
    "sync_strategy": "merge",
    "batch_size": 1000,
    "concurrent_tables": 3,
    "fail_on_table_error": True,
}


@pytest.fixture(scope="module")
def dag():
    dag_bag = DagBag(dag_folder=DAGS_DIR, include_examples=False)
    assert "cross_database_sync.py" not in str(dag_bag.import_errors)
    return dag_bag.get_dag("cross_database_sync")


class TestDagStructure:
    def test_dag_loads(self, dag):
        assert dag is not None

    def test_dag_has_expected_params(self, dag):
        for param in [
            "source_conn_id",
            "target_conn_id",
            "source_agent_url",
            "target_agent_url",
            "tables",
            "exclude_tables",
            "sync_strategy",
            "batch_size",
            "concurrent_tables",
        ]:
            assert param in dag.params, f"Missing expected parameter: {param}"

    def test_task_order(self, dag):
        assert dag.get_task("resolve_tables").downstream_task_ids == {"sync_tables"}
        assert dag.get_task("sync_tables").downstream_task_ids == {"report"}


class TestFilterTables:
    def test_exclude_patterns(self):
        tables = ["users", "orders", "tmp_orders", "audit_log"]
        assert sync_dag.filter_tables(tables, ["tmp_*", "audit_*"]) == ["users", "orders"]

    def test_no_patterns(self):
        assert sync_dag.filter_tables(["a", "b"], []) == ["a", "b"]


class TestBuildOrchestrator:
    """Connections are resolved once, then the orchestrator is configured from params."""

    def descriptors(self, conn_id, db_type=None):
        if conn_id == "mssql_source":
            return ConnectionDescriptor(MSSQL, host="src", database="app")
        return ConnectionDescriptor(POSTGRES, host="tgt", database="app")

    def test_direct_connections(self):
        with patch.object(ConnectionDescriptor, "from_airflow_connection", side_effect=self.descriptors):
            orchestrator = sync_dag.build_orchestrator(PARAMS)

        assert isinstance(orchestrator.source, LocalEndpoint)
        assert orchestrator.source.dialect == MSSQL
        assert orchestrator.target.dialect == POSTGRES
        assert orchestrator.strategy == SyncStrategy.MERGE
        assert orchestrator.batch_size == 1000
        assert orchestrator.concurrent_tables == 3

    def test_agent_for_one_side(self):
        params = {**PARAMS, "target_agent_url": "http://agent:8000"}
        transport = object()

        with patch.object(ConnectionDescriptor, "from_airflow_connection", side_effect=self.descriptors):
            orchestrator = sync_dag.build_orchestrator(params, transport)

        assert sync_dag.uses_agent(params)
        assert isinstance(orchestrator.source, LocalEndpoint)
        assert isinstance(orchestrator.target, AgentEndpoint)
        assert orchestrator.target.transport is transport


class TestReport:
    def job(self, failures):
        results = [
            {"table": "users", "success": True, "strategy": "merge", "rowsInserted": 5,
             "rowsUpdated": 1, "rowsDeleted": 0, "duration": 12},
        ]
        if failures:
            results.append({"table": "orders", "success": False, "strategy": "replace", "rowsInserted": 0,
                            "rowsUpdated": 0, "rowsDeleted": 0, "duration": 3, "error": "boom"})
        return {
            "results": results,
            "summary": {"totalTables": len(results), "successCount": 1, "failureCount": failures},
        }

    def test_success_report(self, dag):
        report = dag.get_task("report").python_callable
        text = report(self.job(0), params=PARAMS)
        assert "users: OK (merge)" in text

    def test_failure_fails_run(self, dag):
        report = dag.get_task("report").python_callable
        with pytest.raises(AirflowException, match="1 table"):
            report(self.job(1), params=PARAMS)

    def test_failure_tolerated_when_disabled(self, dag):
        report = dag.get_task("report").python_callable
        text = report(self.job(1), params={**PARAMS, "fail_on_table_error": False})
        assert "orders: FAILED" in text


class TestEnvironmentDefaults:
    """Param defaults come from the shared settings, so bad env values cannot break DAG import."""

    def reload_with(self, env):
        get_settings.cache_clear()
        with patch.dict(os.environ, env):
            return importlib.reload(sync_dag)

    def test_invalid_values_fall_back(self):
        try:
            module = self.reload_with({"SYNC_BATCH_SIZE": "lots", "CONCURRENT_TABLES": "many"})
            assert module.DEFAULT_BATCH_SIZE == 5000
            assert module.DEFAULT_CONCURRENT_TABLES == 5
        finally:
            get_settings.cache_clear()
            importlib.reload(sync_dag)

    def test_overrides_reach_params(self):
        try:
            module = self.reload_with({"SYNC_BATCH_SIZE": "250", "CONCURRENT_TABLES": "2"})
            assert module.DEFAULT_BATCH_SIZE == 250
            assert module.DEFAULT_CONCURRENT_TABLES == 2
        finally:
            get_settings.cache_clear()
            importlib.reload(sync_dag)
