"""
Database Agent Service

FastAPI application exposing the sync engine over HTTP: the agent routes a
remote orchestrator calls (schema, batches, table creation, batch writes),
the proxy relay, and the orchestration entry point.

Run with ``python -m db_sync.agent_api`` or any ASGI server.
"""

from typing import Any, Dict, Optional
import hmac
import logging

import jwt
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from db_sync import __version__
from db_sync.agent_client import AUTH_COOKIE, AUTH_HEADER, AgentTransport
from db_sync.api_models import (
    ConnectionRequest,
    CreateTableRequest,
    GetDataRequest,
    OrchestrateRequest,
    ProxyRequest,
    SyncDataRequest,
    TableRequest,
)
from db_sync.config import SyncSettings, get_settings
from db_sync.connection import normalize_dialect
from db_sync.endpoints import LocalEndpoint, build_endpoint
from db_sync.errors import AuthenticationError, ConfigurationError, SyncError
from db_sync.models import SyncStrategy, schema_from_wire, schema_to_wire
from db_sync.orchestrator import SyncOrchestrator
from db_sync.sync_strategies import resolve_strategy

logger = logging.getLogger(__name__)


def app_settings(request: Request) -> SyncSettings:
    return request.app.state.settings


def require_agent_auth(request: Request, settings: SyncSettings = Depends(app_settings)) -> None:
    """
    Check the shared secret header; fall back to the session cookie when
    cookie auth is enabled. The cookie must be a JWT signed with JWT_SECRET.
    Runs before any database work.
    """
    provided = request.headers.get(AUTH_HEADER)
    if provided is not None:
        if settings.agent_auth_key and hmac.compare_digest(provided, settings.agent_auth_key):
            return
        raise AuthenticationError("Invalid agent auth key")

    token = request.cookies.get(AUTH_COOKIE)
    if token and settings.allow_cookie_auth:
        if not settings.jwt_secret:
            raise AuthenticationError("Cookie authentication is not configured")
        try:
            jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected auth token cookie: {e}")
            raise AuthenticationError("Invalid or expired auth token") from e
        return

    raise AuthenticationError("Authentication required. No agent auth key or auth token provided.")


agent_router = APIRouter(prefix="/api/db-agent", dependencies=[Depends(require_agent_auth)])
sync_router = APIRouter(prefix="/api/db-sync", dependencies=[Depends(require_agent_auth)])
health_router = APIRouter()


@agent_router.post("/source/fetch-tables")
def fetch_tables(payload: ConnectionRequest, settings: SyncSettings = Depends(app_settings)) -> Dict[str, Any]:
    with LocalEndpoint(payload.descriptor(), settings).session() as session:
        tables = session.list_tables()
    return {"success": True, "tables": tables, "message": f"Found {len(tables)} tables"}


@agent_router.post("/source/get-schema")
def get_schema(payload: TableRequest, settings: SyncSettings = Depends(app_settings)) -> Dict[str, Any]:
    with LocalEndpoint(payload.descriptor(), settings).session() as session:
        schema, primary_key = session.describe(payload.table_name)
    return {"success": True, "schema": schema_to_wire(schema), "primaryKey": primary_key}


@agent_router.post("/source/get-data")
def get_data(payload: GetDataRequest, settings: SyncSettings = Depends(app_settings)) -> Dict[str, Any]:
    with LocalEndpoint(payload.descriptor(), settings).session() as session:
        batch = session.fetch_batch(payload.table_name, payload.offset, payload.limit)
    return {"success": True, **batch.to_dict()}


@agent_router.post("/target/create-table")
def create_table(payload: CreateTableRequest, settings: SyncSettings = Depends(app_settings)) -> Dict[str, Any]:
    source_dialect = normalize_dialect(payload.source_db)
    source_schema = schema_from_wire(payload.columns)

    with LocalEndpoint(payload.descriptor(), settings).session() as session:
        created = session.ensure_table(
            payload.table_name, source_schema, source_dialect, payload.primary_key
        )

    return {
        "success": True,
        "tableCreated": created,
        "tableExists": not created,
        "message": (
            f"Table {payload.table_name} created successfully" if created
            else f"Table {payload.table_name} already exists"
        ),
    }


@agent_router.post("/target/sync-data")
def sync_data(payload: SyncDataRequest, settings: SyncSettings = Depends(app_settings)) -> Dict[str, Any]:
    requested = SyncStrategy.parse(payload.sync_strategy)
    table_name = payload.table_name

    with LocalEndpoint(payload.descriptor(), settings).session() as session:
        if payload.target_schema:
            target_schema = schema_from_wire(payload.target_schema)
        else:
            target_schema = session.introspector.get_schema(table_name)

        primary_key = payload.primary_key
        if primary_key is None:
            primary_key = (
                session.introspector.detect_primary_key(table_name)
                if requested == SyncStrategy.MERGE else []
            )
        strategy = resolve_strategy(requested, primary_key, table_name)

        columns = payload.columns
        if not columns:
            columns = list(payload.data[0].keys()) if payload.data else [c.column_name for c in target_schema]

        result = session.write_batch(
            table_name,
            payload.data,
            columns,
            strategy,
            payload.is_first_batch,
            payload.is_last_batch,
            target_schema,
            primary_key,
        )

    return {
        "success": True,
        "message": f"Synchronized {len(payload.data)} rows into {table_name}",
        "strategy": strategy.value,
        **result.to_dict(),
    }


@agent_router.post("/proxy")
def proxy(payload: ProxyRequest, request: Request, settings: SyncSettings = Depends(app_settings)) -> JSONResponse:
    if not payload.target_url:
        raise ConfigurationError("Target URL is required")

    with AgentTransport(
        settings=settings,
        auth_key=payload.agent_auth_key,
        session_cookie=request.cookies.get(AUTH_COOKIE),
    ) as transport:
        status, data = transport.relay(payload.target_url, payload.method, payload.body, payload.headers)
    return JSONResponse(content=data, status_code=status)


@sync_router.post("/orchestrate-sync")
def orchestrate_sync(
    payload: OrchestrateRequest,
    request: Request,
    settings: SyncSettings = Depends(app_settings),
) -> Dict[str, Any]:
    source_descriptor = payload.source_descriptor()
    target_descriptor = payload.target_descriptor()
    if not payload.tables:
        raise ConfigurationError("At least one table is required")

    transport: Optional[AgentTransport] = None
    if payload.source_agent_url or payload.target_agent_url:
        transport = AgentTransport(settings=settings, session_cookie=request.cookies.get(AUTH_COOKIE))

    try:
        orchestrator = SyncOrchestrator(
            build_endpoint(source_descriptor, payload.source_agent_url, transport, settings),
            build_endpoint(target_descriptor, payload.target_agent_url, transport, settings),
            strategy=payload.sync_strategy,
            batch_size=payload.batch_size,
            concurrent_tables=payload.concurrent_tables,
            settings=settings,
        )
        return orchestrator.run(payload.tables).to_dict()
    finally:
        if transport is not None:
            transport.close()


@health_router.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__}


def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    error = ConfigurationError(f"Invalid request: {problems}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": "INTERNAL_ERROR"},
    )


def create_app(settings: Optional[SyncSettings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Database Sync Agent",
        version=__version__,
        description="Cross-database synchronization between PostgreSQL and SQL Server",
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(agent_router)
    app.include_router(sync_router)
    app.include_router(health_router)

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger.info(f"Starting database sync agent v{__version__} on port {settings.port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
