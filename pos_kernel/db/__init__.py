"""Database layer - engine, base classes, immutability guards."""

from pos_kernel.db.base import Base, UTCDateTime, UUIDString
from pos_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "UTCDateTime",
    "UUIDString",
]
