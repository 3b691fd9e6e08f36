"""
Tests for the Database Agent Service

These tests exercise the HTTP routes with FastAPI's TestClient. Database
access is replaced by a mocked session so no database is needed.
"""

from unittest.mock import MagicMock, patch

import jwt
import pytest
from db_sync.agent_api import create_app
from db_sync.config import SyncSettings
from db_sync.connection import MSSQL, POSTGRES
from db_sync.errors import DatabaseError
from db_sync.models import (
    BatchResult,
    ColumnDescriptor,
    FetchedBatch,
    SyncJobResult,
    SyncStrategy,
    TableSyncResult,
)
from fastapi.testclient import TestClient

AUTH = {"X-Agent-Auth-Key": "k"}
JWT_SECRET = "jwt-secret"
PG_CONN = {
    "dbType": "postgresql",
    "config": {"host": "db", "port": 5432, "database": "app", "username": "u", "password": "p"},
}


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def local_endpoint(session):
    with patch("db_sync.agent_api.LocalEndpoint") as endpoint:
        endpoint.return_value.session.return_value.__enter__.return_value = session
        yield endpoint


@pytest.fixture
def client(local_endpoint):
    return TestClient(create_app(SyncSettings(agent_auth_key="k", jwt_secret=JWT_SECRET)))


class TestHealth:
    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestAuthentication:
    """Authentication runs before any database work."""

    def test_missing_credentials(self, client, local_endpoint):
        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN)

        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_ERROR"
        local_endpoint.assert_not_called()

    def test_wrong_key(self, client, local_endpoint):
        response = client.post(
            "/api/db-agent/source/fetch-tables", json=PG_CONN, headers={"X-Agent-Auth-Key": "nope"}
        )
        assert response.status_code == 401
        local_endpoint.assert_not_called()

    def test_session_cookie(self, client, session):
        session.list_tables.return_value = []
        client.cookies.set("authToken", jwt.encode({"sub": "user"}, JWT_SECRET, algorithm="HS256"))

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN)

        assert response.status_code == 200

    @pytest.mark.parametrize("token", [
        "session-token",
        jwt.encode({"sub": "user"}, "other-secret", algorithm="HS256"),
        jwt.encode({"sub": "user", "exp": 1}, JWT_SECRET, algorithm="HS256"),
    ])
    def test_forged_cookie_rejected(self, client, local_endpoint, token):
        client.cookies.set("authToken", token)

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN)

        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_ERROR"
        local_endpoint.assert_not_called()

    def test_cookie_rejected_without_secret(self, local_endpoint):
        client = TestClient(create_app(SyncSettings(agent_auth_key="k")))
        client.cookies.set("authToken", jwt.encode({"sub": "user"}, JWT_SECRET, algorithm="HS256"))

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN)

        assert response.status_code == 401
        local_endpoint.assert_not_called()

    def test_cookie_auth_can_be_disabled(self, local_endpoint):
        app = create_app(SyncSettings(agent_auth_key="k", allow_cookie_auth=False, jwt_secret=JWT_SECRET))
        client = TestClient(app)
        client.cookies.set("authToken", jwt.encode({"sub": "user"}, JWT_SECRET, algorithm="HS256"))

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN)

        assert response.status_code == 401


class TestSourceRoutes:
    def test_fetch_tables(self, client, session, local_endpoint):
        session.list_tables.return_value = ["customers", "orders"]

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["tables"] == ["customers", "orders"]
        descriptor = local_endpoint.call_args.args[0]
        assert descriptor.dialect == POSTGRES
        assert descriptor.host == "db"

    def test_get_schema(self, client, session):
        session.describe.return_value = ([ColumnDescriptor("id", "integer", False)], ["id"])

        response = client.post(
            "/api/db-agent/source/get-schema", json={**PG_CONN, "tableName": "users"}, headers=AUTH
        )

        body = response.json()
        assert body["schema"][0]["column_name"] == "id"
        assert body["schema"][0]["is_nullable"] == "NO"
        assert body["primaryKey"] == ["id"]

    def test_get_data(self, client, session):
        session.fetch_batch.return_value = FetchedBatch([{"id": 1}], total_count=3, offset=0, limit=1)

        response = client.post(
            "/api/db-agent/source/get-data",
            json={**PG_CONN, "tableName": "users", "offset": 0, "limit": 1},
            headers=AUTH,
        )

        body = response.json()
        assert body["data"] == [{"id": 1}]
        assert body["totalCount"] == 3
        assert body["hasMore"] is True
        session.fetch_batch.assert_called_once_with("users", 0, 1)

    def test_missing_table_name(self, client, local_endpoint):
        response = client.post("/api/db-agent/source/get-schema", json=PG_CONN, headers=AUTH)

        assert response.status_code == 400
        assert response.json()["error"] == "CONFIGURATION_ERROR"
        assert "tableName" in response.json()["message"]
        local_endpoint.assert_not_called()

    def test_negative_offset(self, client):
        response = client.post(
            "/api/db-agent/source/get-data",
            json={**PG_CONN, "tableName": "users", "offset": -1},
            headers=AUTH,
        )
        assert response.status_code == 400

    def test_unsupported_database_type(self, client):
        response = client.post(
            "/api/db-agent/source/fetch-tables", json={**PG_CONN, "dbType": "oracle"}, headers=AUTH
        )
        assert response.status_code == 400
        assert "oracle" in response.json()["message"]

    def test_database_failure(self, client, session):
        session.describe.side_effect = DatabaseError("Table 'ghost' not found or has no columns")

        response = client.post(
            "/api/db-agent/source/get-schema", json={**PG_CONN, "tableName": "ghost"}, headers=AUTH
        )

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "message": "Table 'ghost' not found or has no columns",
            "error": "DATABASE_ERROR",
        }

    def test_unexpected_failure(self, local_endpoint, session):
        session.list_tables.side_effect = RuntimeError("boom")
        client = TestClient(create_app(SyncSettings(agent_auth_key="k")), raise_server_exceptions=False)

        response = client.post("/api/db-agent/source/fetch-tables", json=PG_CONN, headers=AUTH)

        assert response.status_code == 500
        assert response.json()["error"] == "INTERNAL_ERROR"


class TestTargetRoutes:
    def test_create_table(self, client, session):
        session.ensure_table.return_value = True
        schema = [{"column_name": "id", "data_type": "int", "is_nullable": "NO"}]

        response = client.post(
            "/api/db-agent/target/create-table",
            json={**PG_CONN, "tableName": "users", "schema": schema, "sourceDB": "mssql", "primaryKey": ["id"]},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["tableCreated"] is True
        args = session.ensure_table.call_args.args
        assert args[0] == "users"
        assert args[1] == [ColumnDescriptor("id", "int", False)]
        assert args[2] == MSSQL
        assert args[3] == ["id"]

    def test_create_table_requires_schema(self, client):
        response = client.post(
            "/api/db-agent/target/create-table",
            json={**PG_CONN, "tableName": "users", "schema": [], "sourceDB": "mssql"},
            headers=AUTH,
        )
        assert response.status_code == 400

    def test_sync_data_merge_falls_back_without_key(self, client, session):
        session.introspector.get_schema.return_value = [ColumnDescriptor("id", "integer")]
        session.introspector.detect_primary_key.return_value = []
        session.write_batch.return_value = BatchResult(inserted=2, deleted=5)

        response = client.post(
            "/api/db-agent/target/sync-data",
            json={
                **PG_CONN,
                "tableName": "logs",
                "data": [{"id": 1}, {"id": 2}],
                "syncStrategy": "merge",
                "isFirstBatch": True,
            },
            headers=AUTH,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["strategy"] == "replace"
        assert body["inserted"] == 2
        assert body["deleted"] == 5
        args = session.write_batch.call_args.args
        assert args[2] == ["id"]
        assert args[3] == SyncStrategy.REPLACE
        assert args[4] is True

    def test_sync_data_uses_supplied_metadata(self, client, session):
        session.write_batch.return_value = BatchResult(updated=1)

        response = client.post(
            "/api/db-agent/target/sync-data",
            json={
                **PG_CONN,
                "tableName": "users",
                "data": [{"id": 1, "name": "a"}],
                "columns": ["id", "name"],
                "syncStrategy": "merge",
                "targetSchema": [
                    {"column_name": "id", "data_type": "integer"},
                    {"column_name": "name", "data_type": "text"},
                ],
                "primaryKey": ["id"],
            },
            headers=AUTH,
        )

        assert response.json()["strategy"] == "merge"
        session.introspector.get_schema.assert_not_called()
        session.introspector.detect_primary_key.assert_not_called()

    def test_sync_data_unknown_strategy(self, client):
        response = client.post(
            "/api/db-agent/target/sync-data",
            json={**PG_CONN, "tableName": "users", "syncStrategy": "append"},
            headers=AUTH,
        )
        assert response.status_code == 400


class TestProxy:
    def test_relays_status_and_body(self, client):
        with patch("db_sync.agent_api.AgentTransport") as transport_class:
            transport = transport_class.return_value.__enter__.return_value
            transport.relay.return_value = (404, {"success": False, "message": "nope"})

            response = client.post(
                "/api/db-agent/proxy",
                json={"targetUrl": "http://agent/x", "body": {"a": 1}, "agentAuthKey": "remote"},
                headers=AUTH,
            )

        assert response.status_code == 404
        assert response.json()["message"] == "nope"
        assert transport_class.call_args.kwargs["auth_key"] == "remote"
        transport.relay.assert_called_once_with("http://agent/x", "POST", {"a": 1}, {})

    def test_requires_target_url(self, client):
        response = client.post("/api/db-agent/proxy", json={}, headers=AUTH)
        assert response.status_code == 400


class TestOrchestrateSync:
    def test_runs_job(self, client):
        job = SyncJobResult(
            results=[TableSyncResult(table="users", success=True, message="ok", counts=BatchResult(inserted=2))],
            duration_ms=10,
            strategy=SyncStrategy.REPLACE,
        )
        with patch("db_sync.agent_api.SyncOrchestrator") as orchestrator_class:
            orchestrator_class.return_value.run.return_value = job
            response = client.post(
                "/api/db-sync/orchestrate-sync",
                json={
                    "sourceDB": "mssql",
                    "sourceConnectionUrl": "mssql://sa:pw@src:1433/app",
                    "targetDB": "postgresql",
                    "targetConfig": PG_CONN["config"],
                    "tables": ["users"],
                    "batchSize": 100,
                },
                headers=AUTH,
            )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["summary"]["totalInserted"] == 2
        assert orchestrator_class.call_args.kwargs["batch_size"] == 100
        orchestrator_class.return_value.run.assert_called_once_with(["users"])

    def test_requires_tables(self, client):
        response = client.post(
            "/api/db-sync/orchestrate-sync",
            json={
                "sourceDB": "mssql",
                "sourceConnectionUrl": "mssql://sa:pw@src/app",
                "targetDB": "postgresql",
                "targetConfig": PG_CONN["config"],
                "tables": [],
            },
            headers=AUTH,
        )
        assert response.status_code == 400
