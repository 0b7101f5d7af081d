"""Database layer - engine, base classes, types."""

from approval_kernel.db.base import UUID, Base, TZDateTime, UUIDString
from approval_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "build_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "session_scope",
    "Base",
    "TZDateTime",
    "UUIDString",
    "UUID",
]
