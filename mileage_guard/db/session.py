"""Engine and session factory configuration."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mileage_guard.db.base import Base


def build_engine(database_url: str) -> Engine:
    """Create an engine suited to *database_url*.

    SQLite connections are shared across threads (FastAPI runs sync
    dependencies in a thread pool); an in-memory SQLite database is pinned
    to a single connection so every session sees the same data.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create missing tables (SQLite and tests; Postgres uses alembic)."""
    from mileage_guard.db import models  # noqa: F401  (register tables)

    Base.metadata.create_all(bind=engine)
