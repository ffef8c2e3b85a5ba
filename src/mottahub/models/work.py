"""Work records mirrored from Karbon: work items and their tasks, notes, invoices, time."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class WorkStatus(SQLModel, table=True):
    """A tenant work status (TenantSettings.WorkStatuses), referenced by WorkItem.work_status_key."""

    __tablename__ = "work_status"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_status_key: str = Field(unique=True, index=True)

    name: Optional[str] = None
    description: Optional[str] = None
    status_type: Optional[str] = None
    primary_status_name: Optional[str] = None
    secondary_status_name: Optional[str] = None
    work_type_keys: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))
    display_order: Optional[int] = None
    is_active: Optional[bool] = None
    is_default_filter: Optional[bool] = None

    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class WorkItem(SQLModel, table=True):
    """
    The central unit of tracked work.

    The client is referenced softly by (client_type, karbon_client_key); the
    reconciliation pass later resolves it to exactly one of contact_id or
    organization_id. Those two columns are never written by the upsert path.
    """

    __tablename__ = "work_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_work_item_key: str = Field(unique=True, index=True)

    title: Optional[str] = None
    description: Optional[str] = None
    work_type: Optional[str] = None
    workflow_status: Optional[str] = None
    primary_status: Optional[str] = None
    secondary_status: Optional[str] = None
    work_status_key: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None  # "Deleted" after a WorkItem.Deleted webhook
    user_defined_identifier: Optional[str] = None
    work_template_key: Optional[str] = None

    # Soft client reference
    client_type: Optional[str] = None  # "Contact" | "Organization"
    karbon_client_key: Optional[str] = Field(default=None, index=True)
    client_name: Optional[str] = None
    contact_id: Optional[int] = Field(default=None, foreign_key="contacts.id", index=True)
    organization_id: Optional[int] = Field(
        default=None, foreign_key="organizations.id", index=True
    )
    client_group_key: Optional[str] = None
    client_group_name: Optional[str] = None

    assignee_key: Optional[str] = None
    assignee_name: Optional[str] = None
    client_manager_key: Optional[str] = None
    client_manager_name: Optional[str] = None
    client_partner_key: Optional[str] = None
    client_partner_name: Optional[str] = None

    start_date: Optional[date] = None
    due_date: Optional[date] = None
    deadline_date: Optional[date] = None
    completed_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    year_end: Optional[date] = None

    # Derived by the normalizer
    tax_year: Optional[int] = Field(default=None, index=True)
    entity_type: Optional[str] = None
    service_line: Optional[str] = None

    fee_type: Optional[str] = None
    estimated_fee: Optional[float] = None
    fixed_fee_amount: Optional[float] = None
    hourly_rate: Optional[float] = None
    budget_hours: Optional[float] = None
    budget_minutes: Optional[int] = None
    budget_amount: Optional[float] = None

    tags: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))
    custom_fields: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    karbon_url: Optional[str] = None
    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class KarbonTask(SQLModel, table=True):
    """A to-do inside a work item."""

    __tablename__ = "karbon_tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_task_key: str = Field(unique=True, index=True)
    karbon_work_item_key: Optional[str] = Field(default=None, index=True)

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    is_complete: Optional[bool] = None
    is_blocking: Optional[bool] = None
    due_date: Optional[date] = None
    completed_date: Optional[date] = None
    assignee_key: Optional[str] = None
    assignee_name: Optional[str] = None
    assignee_email: Optional[str] = None
    estimated_minutes: Optional[int] = None
    actual_minutes: Optional[int] = None

    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class KarbonNote(SQLModel, table=True):
    """A note attached to a work item or contact."""

    __tablename__ = "karbon_notes"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_note_key: str = Field(unique=True, index=True)
    karbon_work_item_key: Optional[str] = Field(default=None, index=True)
    karbon_contact_key: Optional[str] = None

    subject: Optional[str] = None
    body: Optional[str] = None
    note_type: Optional[str] = None
    author_key: Optional[str] = None
    author_name: Optional[str] = None
    is_pinned: Optional[bool] = None

    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class KarbonInvoice(SQLModel, table=True):
    """An invoice issued from Karbon billing."""

    __tablename__ = "karbon_invoices"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_invoice_key: str = Field(unique=True, index=True)

    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    subtotal: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    amount_paid: Optional[float] = None
    amount_due: Optional[float] = None
    client_key: Optional[str] = None
    client_name: Optional[str] = None
    karbon_work_item_key: Optional[str] = None
    line_items: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))

    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class KarbonTimeEntry(SQLModel, table=True):
    """One time entry, flattened out of a weekly Karbon timesheet."""

    __tablename__ = "karbon_time_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_time_entry_key: str = Field(unique=True, index=True)
    karbon_timesheet_key: Optional[str] = None

    entry_date: Optional[date] = None
    minutes: Optional[int] = None
    description: Optional[str] = None
    is_billable: Optional[bool] = None
    hourly_rate: Optional[float] = None
    billed_amount: Optional[float] = None
    user_key: Optional[str] = None
    user_name: Optional[str] = None
    karbon_work_item_key: Optional[str] = None
    client_key: Optional[str] = None
    client_name: Optional[str] = None
    role_name: Optional[str] = None
    task_type_name: Optional[str] = None
    timesheet_status: Optional[str] = None

    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
