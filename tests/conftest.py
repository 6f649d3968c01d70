"""Shared test fixtures for collection sync."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from collection_sync.config import Settings
from collection_sync.main import create_app
from collection_sync.database import create_engine as create_db_engine
from collection_sync.database import create_schema
from collection_sync.models.collection import Collection, Folder, Request
from collection_sync.services.settings_service import (
    SYNC_PROVIDER,
    SYNC_REPOSITORY,
    SYNC_TOKEN,
    set_setting,
)
from collection_sync.services.sync_service import RemoteSyncService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

    from collection_sync.services.sync_service import ProviderFactory

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"

COLLECTION_ID = "11111111-1111-4111-8111-111111111111"
FOLDER_ID = "22222222-2222-4222-8222-222222222222"
REQUEST_ROOT_ID = "33333333-3333-4333-8333-333333333333"
REQUEST_NESTED_ID = "44444444-4444-4444-8444-444444444444"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=False,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        auto_sync_on_startup=False,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


async def seed_collection(session: AsyncSession, **overrides: Any) -> Collection:
    """Insert the "My API" collection: one root request and one folder holding one request."""
    fields: dict[str, Any] = {
        "id": COLLECTION_ID,
        "name": "My API",
        "description": "Example collection",
        "variables": json.dumps([{"key": "baseUrl", "value": "https://api.example.com"}]),
        "order": 1,
    }
    fields.update(overrides)
    collection = Collection(**fields)
    session.add(collection)
    session.add(Folder(id=FOLDER_ID, collection_id=COLLECTION_ID, name="Users", order=0))
    session.add(
        Request(
            id=REQUEST_ROOT_ID,
            collection_id=COLLECTION_ID,
            name="Health",
            method="GET",
            url="{{baseUrl}}/health",
            body_type="none",
            order=1,
        )
    )
    session.add(
        Request(
            id=REQUEST_NESTED_ID,
            collection_id=COLLECTION_ID,
            folder_id=FOLDER_ID,
            name="List users",
            method="GET",
            url="{{baseUrl}}/users",
            headers=json.dumps([{"key": "Accept", "value": "application/json"}]),
            body_type="none",
            order=0,
        )
    )
    await session.commit()
    return collection


async def configure_remote(session: AsyncSession, provider: str = "github") -> None:
    """Store a complete global sync configuration."""
    await set_setting(session, SYNC_PROVIDER, provider, TEST_SECRET_KEY)
    await set_setting(session, SYNC_REPOSITORY, "acme/api-collections", TEST_SECRET_KEY)
    await set_setting(session, SYNC_TOKEN, "ghp_test_token_value", TEST_SECRET_KEY)
    await session.commit()


@asynccontextmanager
async def create_test_client(
    settings: Settings,
    provider_factory: ProviderFactory | None = None,
) -> AsyncGenerator[tuple[AsyncClient, FastAPI]]:
    """Create an HTTP test client with a fully initialized app.

    Performs the work of the application lifespan by hand because
    ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    engine, factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = factory

    await create_schema(engine)

    sync_service = RemoteSyncService(factory, settings, provider_factory=provider_factory)
    app.state.sync_service = sync_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac, app

    await engine.dispose()
