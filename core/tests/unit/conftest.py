"""Shared fixtures for state-layer tests.

Repositories run against an in-memory SQLite database via aiosqlite so the
suite needs no PostgreSQL instance.
"""

from __future__ import annotations

import pytest_asyncio
from hvacdesk_core.state.tables import Base, CompanyTable, UserTable
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_session(async_session):
    """Session with two companies and their users."""
    async_session.add_all(
        [
            CompanyTable(id="co-1", name="Polar Air HVAC", email="office@polarair.test", stripe_customer_id="cus_AAA"),
            CompanyTable(id="co-2", name="Summit Refrigeration", email="billing@summit.test"),
        ]
    )
    await async_session.flush()
    async_session.add_all(
        [
            UserTable(id="u-owner", company_id="co-1", email="owner@polarair.test", role="owner"),
            UserTable(id="u-tech", company_id="co-1", email="tech@polarair.test", role="technician"),
            UserTable(id="u-support", company_id="co-2", email="support@hvacdesk.test", role="platform_admin"),
        ]
    )
    await async_session.flush()
    return async_session
