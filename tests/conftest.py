"""
Test configuration and fixtures.
Uses SQLite (aiosqlite) for fast tests and an in-memory fake Redis. No external services.
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import src.models  # noqa: F401  registers all tables on Base.metadata
from src.config import get_settings
from src.database import Base


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeRedis:
    """Just enough of redis.asyncio for locks, heartbeats and alert cooldowns."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def eval(self, script, numkeys, key, value):
        self._check()
        if self.store.get(key) == value:
            del self.store[key]
            return 1
        return 0

    async def ping(self):
        self._check()
        return True


@pytest.fixture(autouse=True)
def fake_redis():
    """Every test gets a fresh in-memory Redis; nothing reaches a real server."""
    redis = FakeRedis()
    with patch("src.utils.redis_client._redis_client", redis):
        yield redis


@pytest.fixture
def settings_override(monkeypatch):
    """Apply settings through the environment and rebuild the cached Settings."""
    def _apply(**values):
        for key, value in values.items():
            if isinstance(value, (list, dict)):
                value = json.dumps(value)
            monkeypatch.setenv(key.upper(), str(value))
        get_settings.cache_clear()
        return get_settings()

    get_settings.cache_clear()
    yield _apply
    get_settings.cache_clear()


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """
    File-backed SQLite shared by several sessions (workers open their own).
    Installed as the app-wide session factory for the duration of the test.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tourpay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    with patch("src.database._async_session_factory", factory):
        yield factory
    await engine.dispose()


@pytest.fixture
def make_order():
    """Create a committed order, optionally backdated or already advanced."""
    async def _make(
        db,
        checkout_id: str | None = None,
        payment_intent_id: str | None = None,
        total: str = "150.00",
        status: str | None = None,
        created_at: datetime | None = None,
        **fields,
    ):
        from src.services.order_ledger import create_order

        if not checkout_id and not payment_intent_id:
            checkout_id = f"chk_{uuid.uuid4().hex[:10]}"
        order = await create_order(
            db, Decimal(total),
            checkout_id=checkout_id,
            payment_intent_id=payment_intent_id,
            performed_by="user_1",
        )
        if status:
            order.status = status
        if created_at:
            order.created_at = created_at
        for name, value in fields.items():
            setattr(order, name, value)
        await db.commit()
        return order

    return _make


@pytest.fixture
def minutes_ago():
    def _ago(minutes: float) -> datetime:
        return datetime.now(timezone.utc) - timedelta(minutes=minutes)
    return _ago
