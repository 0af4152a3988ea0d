from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from repopass import database
from repopass.api import create_app
from repopass.api.app import build_services
from repopass.config import RepoPassSettings
from repopass.database import Database, init_database
from repopass.storage import PurchaseStore

DSN = "postgresql://db.internal/repopass"


class _FakeConnection:
    def __init__(self) -> None:
        self.executed: list[str] = []

    @asynccontextmanager
    async def transaction(self):
        yield

    async def execute(self, query, *args):
        self.executed.append(query)
        return "OK"


class _FakePool:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.conn = _FakeConnection()
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def pools(monkeypatch) -> list[_FakePool]:
    created: list[_FakePool] = []

    async def create_pool(dsn, **kwargs):
        pool = _FakePool(dsn)
        created.append(pool)
        return pool

    monkeypatch.setattr(Database, "_pool", None)
    monkeypatch.setattr(database.asyncpg, "create_pool", create_pool)
    return created


@pytest.mark.asyncio
async def test_init_database_uses_given_dsn(pools):
    await init_database("postgres://db.internal/repopass")

    (pool,) = pools
    assert pool.dsn == DSN
    assert pool.conn.executed == [database.SCHEMA_SQL]


@pytest.mark.asyncio
async def test_schema_bootstrap_skipped_in_prod(pools):
    await init_database(DSN, environment="prod")

    (pool,) = pools
    assert pool.dsn == DSN
    assert pool.conn.executed == []


def test_lifespan_opens_configured_database_and_store_shares_it(pools):
    settings = RepoPassSettings(database_url=DSN)
    services = build_services(settings)

    with TestClient(create_app(services=services)):
        (pool,) = pools
        assert pool.dsn == DSN
        assert pool.conn.executed == [database.SCHEMA_SQL]

    assert pool.closed
    assert isinstance(services.store, PurchaseStore)
    assert services.store._use_postgres()
