"""
Vocilia Verification - Database Configuration
SQLAlchemy engine and session factory, owned by the process entry point
"""
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool


# Base class for ORM models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False):
    """
    Create an engine for the given URL.

    In-memory SQLite URLs share one connection across threads so that
    the API test client and background sweeps see the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine):
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine):
    """Initialize database - create all tables."""
    # Register models on Base.metadata
    from .models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db(request: Request):
    """Dependency for FastAPI - yields database session."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
