"""Shared API dependencies: settings, DB session, sync service."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from collection_sync.config import Settings
from collection_sync.services.sync_service import RemoteSyncService


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_sync_service(request: Request) -> RemoteSyncService:
    """Get the remote sync service from app state."""
    service: RemoteSyncService = request.app.state.sync_service
    return service
