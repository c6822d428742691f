"""
Engine and session lifecycle for the identity backend.

- configure_engine: install the process-wide pooled engine (from
  BackendSettings.database_url, or an engine built elsewhere)
- init_db: create identity tables and seed the default roles
- get_db_session: FastAPI dependency, one session per request
- reset_engine: dispose the engine on shutdown

Usage:
    from saas_identity.database.session import get_db_session

    @router.get("/me")
    async def get_me(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

from saas_identity.models.base import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """Rewrite postgres:// URLs (Heroku/Render style) to postgresql://."""
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


def create_pooled_engine(database_url: str) -> Engine:
    """Build a QueuePool engine that pings connections before handing them out."""
    return create_engine(
        normalize_database_url(database_url),
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def configure_engine(
    database_url: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Engine:
    """
    Install the engine used by get_db_session.

    Args:
        database_url: URL to build a pooled engine for (DATABASE_URL if omitted)
        engine: Ready-made engine to use instead

    Raises:
        ValueError: If neither an engine nor a database URL is available
    """
    global _engine, _session_factory

    if engine is None:
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL environment variable is not set")
        engine = create_pooled_engine(database_url)
        logger.info("Database engine created", extra={"dialect": engine.dialect.name})

    if engine is not _engine:
        reset_engine()
    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False)
    return engine


def get_engine() -> Engine:
    if _engine is None:
        return configure_engine()
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Create identity tables and seed the default roles.

    Safe to call on every startup: create_all skips existing tables and
    role seeding is idempotent.
    """
    # Registers every model on Base.metadata
    from saas_identity import models  # noqa: F401
    from saas_identity.models.role import seed_default_roles

    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)

    with Session(bind=engine) as session:
        with session.begin():
            roles = seed_default_roles(session)
            role_names = [r.name for r in roles]

    logger.info(
        "Identity schema ready",
        extra={"tables": sorted(Base.metadata.tables), "roles": role_names},
    )


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Raises HTTP 503 if no database is configured.
    """
    if _session_factory is None:
        try:
            get_engine()
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Database not configured"
            )

    session = _session_factory()
    try:
        yield session
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose the installed engine, if any."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
