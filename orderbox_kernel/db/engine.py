"""
Module: orderbox_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management
    and transactional scope utilities.  The single point of database
    connection configuration.
Architecture position: Kernel > DB.  May import from db/base.py; imports the
    models package only inside create_tables/drop_tables.

Invariants enforced:
    - One engine (and so one connection pool) per process, shared by every
      job type.  Each repository call opens its own short-lived session.
    - SQLite connections are usable from any thread (batch jobs run on
      launcher threads); in-memory SQLite uses a single shared connection.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orderbox_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url`` without touching module state.

    SQLite URLs get ``check_same_thread=False``; ``sqlite://`` and
    ``sqlite:///:memory:`` additionally get a StaticPool so every session
    sees the same in-memory database.
    """
    kwargs: dict = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(database_url, **kwargs)


def init_engine_from_url(database_url: str, echo: bool = False) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Postconditions: subsequent get_engine/get_session calls use this engine.
        A second call overwrites the first.
    """
    global _engine, _SessionFactory

    _engine = build_engine(database_url, echo=echo)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
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


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory for creating sessions.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed; on exception it is
    rolled back, closed, and the exception re-raised.

    Usage:
        with session_scope(factory) as session:
            session.add(entity)
    """
    session = session_factory() if session_factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create all tables defined in ``orderbox_kernel.models``."""
    from orderbox_kernel.db.base import Base
    import orderbox_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from orderbox_kernel.db.base import Base
    import orderbox_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Reset the engine and session factory.  Useful for test cleanup."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
