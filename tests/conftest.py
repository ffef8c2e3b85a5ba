"""Shared test fixtures."""
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from mottahub.models.client import ClientGroup, Contact, Organization, TeamMember  # noqa: F401
from mottahub.models.sync import SyncCursor, SyncRun  # noqa: F401
from mottahub.models.work import (  # noqa: F401
    KarbonInvoice,
    KarbonNote,
    KarbonTask,
    KarbonTimeEntry,
    WorkItem,
    WorkStatus,
)
from mottahub.config import Settings


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Settings with credentials set and no throttling delay."""
    return Settings(
        _env_file=None,
        karbon_access_key="test-access-key",
        karbon_bearer_token="test-bearer-token",
        karbon_webhook_secret="",
        upsert_batch_size=50,
        nested_fetch_batch_size=10,
        nested_fetch_delay_seconds=0,
    )
