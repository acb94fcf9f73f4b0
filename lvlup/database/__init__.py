"""
Database Module
"""
from .connection import (
    build_engine,
    build_session_factory,
    check_database_health,
    close_database,
    create_tables,
    init_database,
    session_scope,
)
from .models import Base

__all__ = [
    "build_engine",
    "build_session_factory",
    "check_database_health",
    "close_database",
    "create_tables",
    "init_database",
    "session_scope",
    "Base",
]
