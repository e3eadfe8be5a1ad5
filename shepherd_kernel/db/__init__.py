"""Database layer - engine, base classes, transactional scopes."""

from shepherd_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString
from shepherd_kernel.db.engine import (
    create_engine_for_url,
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    run_in_transaction,
    session_scope,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
    "create_engine_for_url",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "run_in_transaction",
    "session_scope",
]
