import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tests.helpers import FakeAvatar, FakeScene, FakeSettings
from tsukiko.common.database.engine import create_all_tables
from tsukiko.common.memory_store import MemoryStore


@pytest.fixture
def fake_settings():
    return FakeSettings()


@pytest.fixture
def fake_avatar():
    return FakeAvatar()


@pytest.fixture
def fake_scene():
    return FakeScene()


@pytest.fixture
async def memory_store():
    """基于内存 SQLite 的记忆库"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all_tables(engine)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield MemoryStore(factory)
    await engine.dispose()
