"""
Shared fixtures: a throwaway SQLite database per test, a controllable
clock, and stores wired to both.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cache.store import CacheStore
from connectors.accounts import AccountStore
from connectors.encryption import ConfigCipher
from database.helpers import init_models


class FakeClock:
    """Manually advanced clock; ``clock()`` for the cache, ``clock.epoch`` for brokers."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cipher():
    return ConfigCipher(Fernet.generate_key())


@pytest.fixture
def accounts(session_factory, cipher):
    return AccountStore(session_factory, cipher)


@pytest.fixture
def cache(session_factory, clock):
    return CacheStore(session_factory, clock=clock)
