"""Tests for database engine and schema creation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import inspect, text

from collection_sync.database import create_engine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

    from collection_sync.config import Settings


class TestDatabase:
    @pytest.mark.asyncio
    async def test_session_works(self, db_session: AsyncSession) -> None:
        result = await db_session.execute(text("SELECT 42"))
        assert result.scalar() == 42

    @pytest.mark.asyncio
    async def test_schema_has_sync_tables(self, db_engine: AsyncEngine) -> None:
        async with db_engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {"collections", "folders", "requests", "sync_file_state", "app_settings"} <= set(
            tables
        )

    @pytest.mark.asyncio
    async def test_create_engine_returns_working_factory(self, test_settings: Settings) -> None:
        engine, factory = create_engine(test_settings)
        try:
            async with factory() as session:
                assert (await session.execute(text("SELECT 1"))).scalar() == 1
        finally:
            await engine.dispose()
