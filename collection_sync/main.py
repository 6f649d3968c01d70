"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import yaml
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from collection_sync.api.health import VERSION
from collection_sync.api.health import router as health_router
from collection_sync.api.sync import router as sync_router
from collection_sync.config import Settings
from collection_sync.database import create_engine, create_schema
from collection_sync.exceptions import (
    CollectionNotFoundError,
    ProviderError,
    RemoteNotConfiguredError,
    SyncConflictError,
)
from collection_sync.services.settings_service import list_sync_workspace_ids
from collection_sync.services.sync_log import SyncLog
from collection_sync.services.sync_service import RemoteSyncService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

# Exceptions answered with a fixed status; None keeps str(exc) as the detail.
_ERROR_STATUS: list[tuple[type[Exception], int, str | None]] = [
    (CollectionNotFoundError, 404, None),
    (RemoteNotConfiguredError, 400, None),
    (ProviderError, 502, None),
    (yaml.YAMLError, 422, "Invalid content format"),
    (ValueError, 422, None),
    (OperationalError, 503, "Database temporarily unavailable"),
]


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    for noisy in ("uvicorn.access", "httpx", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.INFO if debug else logging.WARNING)


async def run_startup_sync(
    sync_service: RemoteSyncService, workspace_ids: list[str | None]
) -> None:
    """Run auto sync for every scope whose stored ``sync.auto_sync`` flag is set."""
    for workspace_id in workspace_ids:
        config = await sync_service.load_config(workspace_id)
        if not config.auto_sync or not await sync_service.is_configured(workspace_id):
            continue
        try:
            result = await sync_service.auto_sync(workspace_id)
        except (ProviderError, SQLAlchemyError) as exc:
            logger.error("Startup sync failed (workspace=%s): %s", workspace_id, exc)
            continue
        log = logger.info if result.success else logger.warning
        log("Startup sync (workspace=%s): %s", workspace_id, result.message)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Open the database, build the sync service and optionally sync on startup."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting collection sync %s (debug=%s)", VERSION, settings.debug)

    engine, session_factory = create_engine(settings)
    try:
        await create_schema(engine)
    except SQLAlchemyError as exc:
        logger.critical(
            "Failed to initialize database %s: %s. Check database path and permissions.",
            settings.database_url,
            exc,
        )
        await engine.dispose()
        raise
    app.state.engine = engine
    app.state.session_factory = session_factory

    sync_service = RemoteSyncService(
        session_factory, settings, sync_log=SyncLog(settings.sync_log_max_entries)
    )
    app.state.sync_service = sync_service

    if settings.auto_sync_on_startup:
        async with session_factory() as session:
            workspace_ids: list[str | None] = [None, *await list_sync_workspace_ids(session)]
        await run_startup_sync(sync_service, workspace_ids)

    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Collection sync stopped")


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": str(err["loc"][-1]) if err.get("loc") else "unknown",
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning("Invalid request %s %s: %s", request.method, request.url.path, errors)
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(SyncConflictError)
    async def sync_conflict_handler(request: Request, exc: SyncConflictError) -> JSONResponse:
        logger.warning("Sync conflict in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc), "paths": exc.paths})

    for exc_class, status_code, fixed_detail in _ERROR_STATUS:

        async def handler(
            request: Request,
            exc: Exception,
            status_code: int = status_code,
            fixed_detail: str | None = fixed_detail,
        ) -> JSONResponse:
            if status_code >= 500:
                logger.error(
                    "%s in %s %s: %s",
                    type(exc).__name__,
                    request.method,
                    request.url.path,
                    exc,
                    exc_info=exc,
                )
            else:
                logger.info(
                    "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
                )
            detail = fixed_detail or str(exc) or "Invalid value"
            return JSONResponse(status_code=status_code, content={"detail": detail})

        app.add_exception_handler(exc_class, handler)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs
    app = FastAPI(
        title="Collection Sync",
        description="Sync API request collections with a GitHub or GitLab repository",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(sync_router)
    _register_error_handlers(app)
    return app


def cli_entry() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "collection_sync.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
