"""记忆库

基于 SQLAlchemy 异步会话的用户 / 消息 / 记忆 / 设置 / 高光存储。
settings 表同时充当运行时配置来源，每次读取都直接查库。
"""

import time
from dataclasses import dataclass
from typing import Literal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tsukiko.common.database.models import Highlights, Memories, Messages, Settings, Users
from tsukiko.common.database.engine import get_session_factory, session_scope
from tsukiko.common.logger import get_logger

logger = get_logger("memory_store")

MemoryScope = Literal["global", "personal"]
MessageRole = Literal["user", "assistant", "system"]


@dataclass(frozen=True, slots=True)
class ChatMessage:
    id: str
    user_id: str | None
    role: str
    content: str
    created_at: int


@dataclass(frozen=True, slots=True)
class HighlightRecord:
    id: str
    timestamp_ms: int
    reason: str


def _now_ms() -> int:
    return int(time.time() * 1000)


class MemoryStore:
    """记忆库，所有方法都是协程"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = await get_session_factory()
        return self._session_factory

    # ==================== 用户 ====================

    async def upsert_user(
        self, platform: str, external_id: str, display_name: str | None = None, avatar_url: str | None = None
    ) -> str:
        """按 (platform, external_id) 查找或创建用户，返回内部 id"""
        async with session_scope(await self._factory()) as session:
            result = await session.execute(
                select(Users).where(Users.platform == platform, Users.external_id == external_id)
            )
            user = result.scalar_one_or_none()
            if user is not None:
                if display_name:
                    user.display_name = display_name
                if avatar_url:
                    user.avatar_url = avatar_url
                return user.id

            user = Users(platform=platform, external_id=external_id, display_name=display_name, avatar_url=avatar_url)
            session.add(user)
            await session.flush()
            logger.debug(f"新用户: {platform}:{external_id} -> {user.id}")
            return user.id

    async def get_user_by_id(self, user_id: str) -> dict | None:
        async with session_scope(await self._factory()) as session:
            user = await session.get(Users, user_id)
            if user is None:
                return None
            return {
                "id": user.id,
                "platform": user.platform,
                "external_id": user.external_id,
                "display_name": user.display_name,
            }

    # ==================== 消息 ====================

    async def save_message(
        self, content: str, role: MessageRole = "user", user_id: str | None = None, created_at: int | None = None
    ) -> ChatMessage:
        created_at = created_at if created_at is not None else _now_ms()
        async with session_scope(await self._factory()) as session:
            message = Messages(user_id=user_id, role=role, content=content, created_at=created_at)
            session.add(message)
            await session.flush()
            return ChatMessage(message.id, user_id, role, content, created_at)

    async def get_recent_messages(self, user_id: str | None = None, limit: int = 50) -> list[ChatMessage]:
        """最近的消息，按时间正序返回"""
        stmt = select(Messages).order_by(Messages.created_at.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(Messages.user_id == user_id)
        async with session_scope(await self._factory()) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [ChatMessage(r.id, r.user_id, r.role, r.content, r.created_at) for r in reversed(rows)]

    async def prune_messages_before(self, cutoff_ms: int) -> int:
        """删除早于 cutoff_ms 的消息，返回删除条数"""
        async with session_scope(await self._factory()) as session:
            result = await session.execute(delete(Messages).where(Messages.created_at < cutoff_ms))
        return result.rowcount or 0

    async def prune_old_messages(self, retention_days: int) -> int:
        """删除 retention_days 天之前的消息"""
        cutoff = _now_ms() - retention_days * 24 * 60 * 60 * 1000
        removed = await self.prune_messages_before(cutoff)
        logger.info(f"已清理 {removed} 条超过 {retention_days} 天的消息")
        return removed

    # ==================== 记忆 ====================

    @staticmethod
    def _memory_owner(scope: MemoryScope, user_id: str | None) -> str | None:
        if scope == "personal":
            if not user_id:
                raise ValueError("personal 作用域的记忆必须提供 user_id")
            return user_id
        return None

    async def set_memory(self, key: str, value: str, scope: MemoryScope = "global", user_id: str | None = None):
        owner = self._memory_owner(scope, user_id)
        async with session_scope(await self._factory()) as session:
            owner_clause = Memories.user_id.is_(None) if owner is None else Memories.user_id == owner
            result = await session.execute(
                select(Memories).where(Memories.key == key, Memories.scope == scope, owner_clause)
            )
            memory = result.scalar_one_or_none()
            if memory is None:
                session.add(Memories(user_id=owner, key=key, value=value, scope=scope, updated_at=_now_ms()))
            else:
                memory.value = value
                memory.updated_at = _now_ms()

    async def get_memory(self, key: str, scope: MemoryScope = "global", user_id: str | None = None) -> str | None:
        owner = self._memory_owner(scope, user_id)
        owner_clause = Memories.user_id.is_(None) if owner is None else Memories.user_id == owner
        async with session_scope(await self._factory()) as session:
            result = await session.execute(
                select(Memories.value).where(Memories.key == key, Memories.scope == scope, owner_clause)
            )
            return result.scalar_one_or_none()

    # ==================== 设置 ====================

    async def get_all_settings(self) -> dict[str, str]:
        async with session_scope(await self._factory()) as session:
            rows = (await session.execute(select(Settings.key, Settings.value))).all()
        return {key: value for key, value in rows}

    async def get_setting(self, key: str) -> str | None:
        async with session_scope(await self._factory()) as session:
            setting = await session.get(Settings, key)
            return setting.value if setting is not None else None

    async def set_setting(self, key: str, value: str) -> None:
        async with session_scope(await self._factory()) as session:
            setting = await session.get(Settings, key)
            if setting is None:
                session.add(Settings(key=key, value=value, updated_at=_now_ms()))
            else:
                setting.value = value
                setting.updated_at = _now_ms()

    async def delete_setting(self, key: str) -> None:
        async with session_scope(await self._factory()) as session:
            await session.execute(delete(Settings).where(Settings.key == key))

    # ==================== 高光 ====================

    async def add_highlight(self, timestamp_ms: int, reason: str) -> HighlightRecord:
        async with session_scope(await self._factory()) as session:
            highlight = Highlights(ts=timestamp_ms, reason=reason)
            session.add(highlight)
            await session.flush()
            return HighlightRecord(highlight.id, timestamp_ms, reason)

    async def list_highlights(self, limit: int = 50) -> list[HighlightRecord]:
        """最近的高光记录，按时间倒序"""
        async with session_scope(await self._factory()) as session:
            rows = (await session.execute(select(Highlights).order_by(Highlights.ts.desc()).limit(limit))).scalars().all()
        return [HighlightRecord(r.id, r.ts, r.reason) for r in rows]


class SettingsTokenStore:
    """把形象控制的认证令牌存进 settings 表，进程重启后仍可用"""

    TOKEN_KEY = "vts.auth_token"

    def __init__(self, store: MemoryStore):
        self._store = store

    async def get_token(self) -> str | None:
        return await self._store.get_setting(self.TOKEN_KEY) or None

    async def save_token(self, token: str) -> None:
        await self._store.set_setting(self.TOKEN_KEY, token)
        logger.info("形象控制认证令牌已保存")

    async def clear_token(self) -> None:
        await self._store.delete_setting(self.TOKEN_KEY)
        logger.info("形象控制认证令牌已清除")
