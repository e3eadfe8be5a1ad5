"""
Module: shepherd_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    transactional scopes, and bounded retry of conflicting transactions.
    This is the single point of database connection configuration.
Architecture position: Kernel > DB.  May import from db/base.py.
    MUST NOT import from services/, selectors/ or outer layers (except
    create_tables, which imports models so metadata is complete).

Invariants enforced:
    - PostgreSQL is the production backend: READ COMMITTED with explicit row
      locks (FOR UPDATE) and advisory locks where stronger isolation is needed.
    - SQLite (local runs, tests) opens every transaction with BEGIN IMMEDIATE
      so concurrent writers queue on the busy timeout instead of failing on
      lock upgrade.
    - A unit of work either commits as a whole or rolls back as a whole.

Failure modes:
    - RuntimeError if get_engine/get_session_factory are called before
      init_engine_from_url().
    - TransactionConflictError once a conflicting unit of work has been
      retried max_attempts times.
"""

import atexit
import time
from contextlib import contextmanager
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from shepherd_kernel.exceptions import TransactionConflictError
from shepherd_kernel.logging_config import get_logger

logger = get_logger("db.engine")

T = TypeVar("T")

# Module-level engine and session factory
_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

# SQLSTATE codes treated as retryable contention
_PG_CONFLICT_CODES = frozenset({
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
})


def create_engine_for_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_busy_timeout: float = 30.0,
) -> Engine:
    """
    Build an engine with backend-specific settings applied.

    PostgreSQL gets a QueuePool and READ COMMITTED.  SQLite gets a busy
    timeout, cross-thread connections, foreign keys, and BEGIN IMMEDIATE.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": sqlite_busy_timeout,
            },
        )
        _configure_sqlite(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def _configure_sqlite(engine: Engine) -> None:
    """Take over pysqlite transaction handling and begin IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Idempotent in the sense that a second call replaces the first.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    _engine = create_engine_for_url(database_url, echo=echo, **pool_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "echo": echo,
        },
    )

    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.  Each worker thread creates its own session.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    session_factory: Callable[[], Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed.  On exception it is
    rolled back and closed, and the exception is re-raised.

    Usage:
        with session_scope(factory) as session:
            session.add(entity)
    """
    factory = session_factory or get_session_factory()
    session = factory()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def is_transaction_conflict(exc: DBAPIError) -> bool:
    """True when a DBAPI error is lock/serialization contention."""
    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode in _PG_CONFLICT_CODES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "deadlock" in message


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    *,
    operation: str,
    max_attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run ``work`` in its own transaction, retrying on contention.

    ``work`` is re-invoked from scratch on each attempt, so it must not hold
    state between calls.  Errors that are not contention propagate on the
    first occurrence.

    Raises:
        TransactionConflictError: contention persisted for max_attempts.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            with session_scope(session_factory) as session:
                return work(session)
        except DBAPIError as exc:
            if not is_transaction_conflict(exc):
                raise
            logger.warning(
                "transaction_conflict",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                },
            )
            if attempt >= max_attempts:
                raise TransactionConflictError(operation, attempt) from exc
            time.sleep(backoff_seconds * attempt)

    # max_attempts < 1
    raise TransactionConflictError(operation, 0)


def create_tables(engine: Engine | None = None) -> None:
    """Create all tables defined in the models."""
    from shepherd_kernel.db.base import Base
    import shepherd_kernel.models  # noqa: F401  (registers tables)

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Primarily for testing."""
    from shepherd_kernel.db.base import Base
    import shepherd_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Reset the engine and session factory (test cleanup)."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres(session_or_engine: Session | Engine | None = None) -> bool:
    """Check whether the given (or current) bind is PostgreSQL."""
    if session_or_engine is None:
        bind = _engine
    elif isinstance(session_or_engine, Session):
        bind = session_or_engine.get_bind()
    else:
        bind = session_or_engine
    if bind is None:
        return False
    return bind.dialect.name == "postgresql"
