"""Shared fixtures for billing_engine tests.

Tests run against an in-memory SQLite database via aiosqlite.  SQLite
returns naive datetimes for ``DateTime(timezone=True)`` columns, so those
columns are wrapped to re-attach UTC on read.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from billing_engine.state.tables import Base


def _patch_columns_for_sqlite() -> None:
    """Make tz-aware DateTime columns round-trip as aware values on SQLite."""

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


class FakeSubscriptions:
    """In-memory stand-in for the Stripe subscription lookup."""

    def __init__(self, subscriptions: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.subscriptions: dict[str, Mapping[str, Any]] = dict(subscriptions or {})
        self.calls: list[str] = []

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        self.calls.append(subscription_id)
        return self.subscriptions[subscription_id]


@pytest_asyncio.fixture
async def engine():
    """Provide an engine bound to a fresh in-memory database with all tables."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Provide a single async session on the in-memory database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def subscriptions() -> FakeSubscriptions:
    """Stripe subscription lookup preloaded with one active subscription."""
    return FakeSubscriptions(
        {
            "sub_1": {
                "id": "sub_1",
                "object": "subscription",
                "customer": "cus_1",
                "status": "active",
                "current_period_end": 1_800_000_000,
            }
        }
    )
