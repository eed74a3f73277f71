from .engine import (
    build_sqlite_url,
    close_engine,
    create_all_tables,
    get_db_session,
    get_engine,
    get_session_factory,
    session_scope,
)
from .models import Base, Highlights, Memories, Messages, Settings, Users

__all__ = [
    "Base",
    "Highlights",
    "Memories",
    "Messages",
    "Settings",
    "Users",
    "build_sqlite_url",
    "close_engine",
    "create_all_tables",
    "get_db_session",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
