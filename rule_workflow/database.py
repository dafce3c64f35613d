"""Database configuration and session management.

The transition engine is handed a session factory rather than reaching for a
module-level connection, so tests and alternative deployments can point it at
their own database.
"""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from rule_workflow.config import get_settings

Base = declarative_base()

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def build_engine(url: str) -> Engine:
    """Create an engine with settings appropriate for the database type."""
    settings = get_settings()

    if url.startswith("sqlite"):
        # SQLite-specific config
        return create_engine(url, connect_args={"check_same_thread": False})

    # PostgreSQL config (production)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False keeps returned rows readable after the unit commits
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().sqlalchemy_url)
    return _engine


def get_session_factory() -> sessionmaker:
    """Dependency for FastAPI endpoints to get the storage handle."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = build_session_factory(get_engine())
    return _SessionLocal


def reset_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables. Models must be imported so they register with Base."""
    from rule_workflow.models import audit, domain  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
