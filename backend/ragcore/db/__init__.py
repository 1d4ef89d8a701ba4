"""Database engine, session factory and declarative base."""

from ragcore.db.base import Base, String20, String64, String255, TimestampMixin
from ragcore.db.session import (
    check_db_health,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "String20",
    "String64",
    "String255",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "check_db_health",
]
