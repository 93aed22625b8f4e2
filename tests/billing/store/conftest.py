"""Fixtures running the store contract against every implementation."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ownly.platform.billing.store.memory import InMemoryBillingStore
from ownly.platform.billing.store.sql import SQLBillingStore
from ownly.platform.db import create_all_tables


@pytest.fixture
async def sql_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_all_tables(engine)
    yield SQLBillingStore(
        async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    )
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sql_store):
    if request.param == "memory":
        return InMemoryBillingStore()
    return sql_store
