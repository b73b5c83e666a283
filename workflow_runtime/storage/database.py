"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./workflow_runtime.db"

# Global engine instance
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()

# Session factory; rebound whenever the engine changes
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _build_engine(database_url: str, echo: bool = False,
                  connect_args: Optional[dict] = None) -> Engine:
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        else:
            connect_args = {}

    # An in-memory SQLite database only survives on a single shared connection
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )

    return create_engine(database_url, echo=echo, connect_args=connect_args)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("WORKFLOW_RUNTIME_DATABASE_URL", DEFAULT_DATABASE_URL)
        _engine = _build_engine(database_url, echo=echo, connect_args=connect_args)
        SessionLocal.configure(bind=_engine)

    return _engine


def configure_database(database_url: str, echo: bool = False,
                       connect_args: Optional[dict] = None) -> Engine:
    """Replace the global engine and rebind the session factory to it."""
    reset_database_engine()
    return get_database_engine(database_url, echo=echo, connect_args=connect_args)


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_db():
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    # Make sure every model is registered on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=get_database_engine())
