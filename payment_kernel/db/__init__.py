"""Database layer - engine, base classes, money types."""

from payment_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from payment_kernel.db.engine import create_tables, get_engine, get_session, session_scope

__all__ = [
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session",
    "session_scope",
]
