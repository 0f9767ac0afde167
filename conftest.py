"""Shared test configuration — must be loaded before issue_bridge modules."""

import os

# Override database URL before any issue_bridge modules are imported.
os.environ["BRIDGE_DATABASE_URL"] = "sqlite+aiosqlite://"

import pytest
from issue_bridge.database import engine, Base, load_models

load_models()


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
