"""Shared test fixtures."""

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.config import Settings
from evermark.db.engine import create_engine, create_tables


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings with defaults."""
    return Settings(
        evermark_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        storage_root=str(tmp_path / "storage"),
        auto_transition=False,
    )


@pytest.fixture
async def engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()
