"""SQLModel database engine and session management."""

import logging

from fastapi import Request
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite needs check_same_thread=False, PostgreSQL does not."""
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty DB
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)


def _run_migrations(engine: Engine):
    """Lightweight schema fixes for databases created by older releases."""
    inspector = inspect(engine)
    if "position_snapshot" not in inspector.get_table_names():
        return

    columns = {col["name"] for col in inspector.get_columns("position_snapshot")}
    if "version" not in columns:
        logger.info("Migrating: adding position_snapshot.version")
        with engine.connect() as conn:
            conn.execute(text(
                "ALTER TABLE position_snapshot ADD COLUMN version INTEGER NOT NULL DEFAULT 0"
            ))
            conn.commit()


def create_db_and_tables(engine: Engine):
    """Create all tables. Called on startup."""
    import perpbot.models  # noqa: F401  registers every table on SQLModel.metadata

    SQLModel.metadata.create_all(engine)
    _run_migrations(engine)


def get_session(request: Request) -> Session:
    """Dependency that yields a database session bound to the app's engine."""
    with Session(request.app.state.runtime.engine) as session:
        yield session
