"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from collection_sync.api.deps import get_session, get_sync_service
from collection_sync.services.sync_service import RemoteSyncService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    remote: str


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_service: Annotated[RemoteSyncService, Depends(get_sync_service)],
) -> HealthResponse:
    """Report database reachability and whether a global remote is configured.

    The remote itself is not contacted; use ``/api/sync/test-connection`` for that.
    """
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        return HealthResponse(
            status="degraded", version=VERSION, database="error", remote="unknown"
        )

    configured = await sync_service.is_configured()
    return HealthResponse(
        status="ok",
        version=VERSION,
        database="ok",
        remote="configured" if configured else "not configured",
    )
