"""
Database connection management for gradetags.

The engine is created lazily and owned by the hosting process: the API
lifespan and the CLI call ``init_engine`` on start and ``dispose_engine``
on shutdown. Sessions come from ``db_session()`` (scripts, jobs) or the
``get_db`` FastAPI dependency.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gradetags.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None

SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # In-memory databases live on one connection
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    # Each uvicorn worker gets its own pool.
    # Total connections = workers x (pool_size + max_overflow)
    return create_engine(
        url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_pre_ping=True,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


def init_engine(url: Optional[str] = None) -> Engine:
    """
    Create the process-wide engine and bind the session factory to it.

    Calling again with an engine already in place returns the existing one.

    Args:
        url: Database URL (defaults to ``settings.database_url``)

    Returns:
        Engine: The bound SQLAlchemy engine
    """
    global _engine
    if _engine is not None:
        return _engine

    _engine = _build_engine(url or settings.database_url)
    SessionLocal.configure(bind=_engine)
    logger.info(f"Database engine initialized ({_engine.url.get_backend_name()})")
    return _engine


def get_engine() -> Engine:
    """Return the engine, creating it from settings on first use."""
    return _engine if _engine is not None else init_engine()


def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine
    if _engine is None:
        return
    _engine.dispose()
    _engine = None
    SessionLocal.configure(bind=None)
    logger.info("Database engine disposed")


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI to get database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session

    Example (FastAPI):
        >>> @router.get("/tags")
        >>> def overview(db: Session = Depends(get_db)):
        >>>     ...
    """
    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with db_session() as db:
        >>>     report = PipelineOrchestrator(db, provider).sweep(SweepRequest())
    """
    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """
    Create all tables programmatically.

    Note:
        Prefer Alembic migrations in production: `alembic upgrade head`
    """
    from gradetags.models.db import Base

    Base.metadata.create_all(bind=get_engine())


def check_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        with db_session() as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
