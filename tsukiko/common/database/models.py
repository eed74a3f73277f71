"""SQLAlchemy数据库模型定义

本文件只包含纯模型定义，使用SQLAlchemy 2.0的Mapped类型注解风格。
引擎和会话管理在 engine.py 和 session.py 中。

时间戳统一存毫秒级整数，和高光记录的 timestamp_ms 保持一致。
"""

import time
import uuid

from sqlalchemy import BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


class Users(Base):
    """聊天用户，(platform, external_id) 唯一"""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)

    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_users_platform_external_id"),)


class Messages(Base):
    """对话消息"""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)

    __table_args__ = (Index("idx_messages_created_at", "created_at"),)


class Memories(Base):
    """键值记忆，global 或 personal 作用域"""

    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default="global")
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)

    __table_args__ = (UniqueConstraint("key", "scope", "user_id", name="uq_memories_key_scope_user"),)


class Settings(Base):
    """运行时设置，key 唯一"""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)


class Highlights(Base):
    """聊天高峰记录，只追加"""

    __tablename__ = "highlights"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
