"""
Database session management with connection pooling.

Provides a shared FastAPI dependency for database sessions across all routes
and a plain generator for jobs.

Usage:
    from gateflow.database.session import get_db_session

    @router.get("/items")
    async def get_items(db: Session = Depends(get_db_session)):
        ...
"""

import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi import HTTPException, status

from gateflow.config.settings import get_settings

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from settings.

    Handles the legacy postgres:// scheme by converting to postgresql://.
    """
    database_url = get_settings().database_url
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            kwargs = {"pool_pre_ping": True}
            if not database_url.startswith("sqlite"):
                kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800)
            _engine = create_engine(database_url, **kwargs)
            logger.info("Database engine created")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Session generator for non-request contexts (jobs, scripts).

    Usage:
        for session in get_db_session_sync():
            # use session
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
