"""
Module: payment_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/, selectors/ or modules (except create_tables, which
    imports the ORM registry so every table is known to the metadata).

Invariants enforced:
    - PostgreSQL sessions run at SERIALIZABLE isolation so a projection
      recomputation or refund allocation never reads a half-written ledger.
      Row locks (SELECT ... FOR UPDATE) on the order row serialize writers
      for the same order on top of that.
    - SQLite (tests, local tooling) runs with driver-level transaction
      handling disabled so SAVEPOINTs behave; FOR UPDATE is a no-op there.
    - Foreign keys are enforced on both backends.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
    - OperationalError on serialization failure; callers retry the whole
      unit of work via services.retry.run_with_retry.

Audit relevance:
    session_scope() gives commit-or-rollback semantics; nothing partial is
    ever visible after a failed multi-table write.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from payment_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN so SAVEPOINTs work."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create an Engine for ``database_url`` without touching module state.

    PostgreSQL gets a pre-pinged QueuePool at SERIALIZABLE isolation.
    SQLite gets savepoint-capable transaction hooks; in-memory databases
    share a single connection through StaticPool.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(database_url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        _install_sqlite_transaction_hooks(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="SERIALIZABLE",
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Initialize the module-level engine and session factory.

    A second call replaces the first.  Returns the Engine.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
    )
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool_size": pool_size,
            "echo": echo,
        },
    )
    return _engine


def get_engine() -> Engine:
    """Raises RuntimeError if the engine has not been initialized."""
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """Raises RuntimeError if the engine has not been initialized."""
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Used by PaymentEngine and by multi-threaded callers that need one
    session per thread.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit; rolls back, logs and re-raises on exception;
    always closes the session.

    Usage:
        with session_scope() as session:
            LedgerService(session, ...).write(...)
    """
    session = get_session()
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


def create_tables(engine: Engine | None = None) -> None:
    """
    Create every kernel and module table.

    Imports the ORM registry first so Base.metadata knows all tables.
    Idempotent: existing tables are left alone.
    """
    from payment_kernel.db.base import Base
    from payment_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    target = engine or get_engine()
    Base.metadata.create_all(target)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from payment_kernel.db.base import Base

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None


def _atexit_dispose():
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
