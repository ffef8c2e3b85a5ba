"""Store engine construction and the FastAPI session dependency.

The engine is built once per process by the entry point (API app, scheduler,
CLI) and passed explicitly to everything that writes to the store.
"""
from typing import Generator

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


def create_tables(engine: Engine) -> None:
    """Create all tables (idempotent)."""
    # Import all models so metadata is populated before create_all
    from mottahub.models.client import ClientGroup, Contact, Organization, TeamMember  # noqa
    from mottahub.models.work import (  # noqa
        KarbonInvoice,
        KarbonNote,
        KarbonTask,
        KarbonTimeEntry,
        WorkItem,
        WorkStatus,
    )
    from mottahub.models.sync import SyncCursor, SyncRun  # noqa
    SQLModel.metadata.create_all(engine)


def create_store_engine(database_url: str, *, create: bool = True) -> Engine:
    """Build an engine for database_url and, by default, create all tables."""
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    if create:
        create_tables(engine)
    return engine


def get_engine(request: Request) -> Engine:
    """FastAPI dependency returning the engine attached to the running app."""
    return request.app.state.engine


def get_session(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine(request)) as session:
        yield session
