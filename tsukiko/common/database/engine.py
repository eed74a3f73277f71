"""SQLite 连接管理

进程内只有一个引擎和一个会话工厂，第一次使用时按 [database] 配置建库建表。
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tsukiko.common.exceptions import DatabaseInitializationError
from tsukiko.common.logger import get_logger

from .models import Base

logger = get_logger("database")

PROJECT_ROOT = Path(__file__).resolve().parents[3]

_SQLITE_PRAGMAS = ("journal_mode = WAL", "synchronous = NORMAL", "foreign_keys = ON")


def build_sqlite_url(sqlite_path: str) -> str:
    """相对路径按项目根目录解析，并确保所在目录存在"""
    path = Path(sqlite_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{path}"


def _apply_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()


async def create_all_tables(engine: AsyncEngine):
    """建表，已存在的表保持不动"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class _Database:
    def __init__(self):
        self.engine: AsyncEngine | None = None
        self.sessions: async_sessionmaker[AsyncSession] | None = None
        self._lock: asyncio.Lock | None = None

    async def ensure(self) -> async_sessionmaker[AsyncSession]:
        if self.sessions is not None:
            return self.sessions
        # 锁必须在事件循环里创建
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self.sessions is None:
                await self._open()
        assert self.sessions is not None
        return self.sessions

    async def _open(self):
        from tsukiko.config.config import get_global_config

        conf = get_global_config().database
        logger.info(f"打开 SQLite 数据库: {conf.sqlite_path}")
        try:
            engine = create_async_engine(
                build_sqlite_url(conf.sqlite_path),
                connect_args={"timeout": conf.connection_timeout},
            )
            event.listen(engine.sync_engine, "connect", _apply_pragmas)
            await create_all_tables(engine)
        except Exception as e:
            logger.error(f"❌ 数据库初始化失败: {e}")
            raise DatabaseInitializationError(f"无法打开数据库 {conf.sqlite_path}: {e}") from e
        self.engine = engine
        self.sessions = async_sessionmaker(engine, expire_on_commit=False)
        logger.info("✅ 数据库已就绪")

    async def close(self):
        engine, self.engine, self.sessions = self.engine, None, None
        if engine is not None:
            await engine.dispose()
            logger.info("数据库连接已释放")


_db = _Database()


async def get_engine() -> AsyncEngine:
    """
    Raises:
        DatabaseInitializationError: 数据库无法打开
    """
    await _db.ensure()
    assert _db.engine is not None
    return _db.engine


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return await _db.ensure()


async def close_engine():
    await _db.close()


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """正常退出提交，异常时回滚后继续抛出"""
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """在全局会话工厂上开启一个 session_scope"""
    async with session_scope(await get_session_factory()) as session:
        yield session
