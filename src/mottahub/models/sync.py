"""Sync bookkeeping models: audit runs and per-kind cursors."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class SyncRun(SQLModel, table=True):
    """Records each orchestrator invocation for audit and debugging. Append-only."""

    __tablename__ = "sync_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    sync_type: str = "full"  # "full", "incremental", "webhook"
    trigger: str = "manual"  # "manual", "scheduled", "api", "webhook"
    status: str = "running"  # "running", "completed", "completed_with_errors", "failed"
    records_fetched: int = 0
    records_synced: int = 0
    records_failed: int = 0
    error_details: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))


class SyncCursor(SQLModel, table=True):
    """
    Highest karbon_modified_at durably written for one entity kind.

    updated_at is the time of the last sync of that kind that finished
    without errors.
    """

    __tablename__ = "sync_cursors"

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_kind: str = Field(unique=True, index=True)
    cursor: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
