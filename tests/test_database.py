"""Tests for model registration and schema creation."""

from sqlalchemy import inspect

from issue_bridge.database import Base, engine, init_db, load_models

TABLES = {
    "bridge_configs",
    "bridge_queue_items",
    "dead_letter_items",
    "issue_mappings",
    "metrics_buckets",
    "routing_rules",
    "triage_items",
    "webhook_events",
}


def test_load_models_registers_every_table():
    load_models()
    assert TABLES <= set(Base.metadata.tables)


async def test_init_db_creates_every_table():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await init_db()

    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    assert TABLES <= set(names)
