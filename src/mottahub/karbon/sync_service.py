"""
KarbonSyncService: orchestrates Karbon → local store synchronization.

Flow for a bulk run:
  1. Create SyncRun (status="running")
  2. For each requested kind, in dependency order
     (users, work_statuses, contacts, organizations, client_groups,
     work_items, tasks, notes, invoices, timesheets):
       fetch → map → (incremental: drop records at or before the cursor)
       → upsert → advance the kind's cursor if nothing failed
  3. Link work items to contacts / organizations (after work_items, or at
     the end when only contacts / organizations were synced)
  4. Update SyncRun with totals and status

A failing kind is recorded in its KindResult and never stops the others.
Only an unreachable store (the initial SyncRun write) propagates.

Webhook events go through the same map → upsert path for a single entity.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, or_, select

from mottahub.config import Settings, get_settings
from mottahub.karbon.client import KarbonClient, ODataQuery
from mottahub.karbon.cursor import CursorStore, filter_modified_after, max_modified
from mottahub.karbon.fields import as_list
from mottahub.karbon.normalizer import map_time_entry, map_to_local, map_work_status
from mottahub.karbon.reconcile import LinkResult, link_soft_foreign_keys
from mottahub.karbon.sink import UpsertSink
from mottahub.karbon.webhook import WebhookPayload, WebhookPayloadError
from mottahub.models.client import ClientGroup, Contact, Organization, TeamMember
from mottahub.models.sync import SyncRun
from mottahub.models.work import (
    KarbonInvoice,
    KarbonNote,
    KarbonTask,
    KarbonTimeEntry,
    WorkItem,
    WorkStatus,
)

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 50


@dataclass(frozen=True)
class EntityConfig:
    kind: str
    model: Type[SQLModel]
    natural_key: str
    # Top-level collection path, or a per-work-item path containing {key}
    path: str
    query: Optional[ODataQuery] = None
    # Single-object resource whose records live in this list field
    records_field: Optional[str] = None

    @property
    def nested(self) -> bool:
        return "{key}" in self.path

    @property
    def expand(self) -> Optional[str]:
        return self.query.expand if self.query else None


ENTITIES: Dict[str, EntityConfig] = {
    c.kind: c
    for c in (
        EntityConfig("users", TeamMember, "karbon_user_key", "/Users"),
        EntityConfig(
            "work_statuses", WorkStatus, "karbon_status_key", "/TenantSettings",
            records_field="WorkStatuses",
        ),
        EntityConfig(
            "contacts", Contact, "karbon_contact_key", "/Contacts",
            ODataQuery(expand="BusinessCards,AccountingDetail", orderby="FullName asc", count=True),
        ),
        EntityConfig(
            "organizations", Organization, "karbon_organization_key", "/Organizations",
            ODataQuery(expand="BusinessCards,AccountingDetail", orderby="OrganizationName asc", count=True),
        ),
        EntityConfig(
            "client_groups", ClientGroup, "karbon_client_group_key", "/ClientGroups",
            ODataQuery(expand="BusinessCard,ClientTeam", orderby="FullName asc", count=True),
        ),
        EntityConfig(
            "work_items", WorkItem, "karbon_work_item_key", "/WorkItems",
            ODataQuery(orderby="Title asc", count=True),
        ),
        EntityConfig("tasks", KarbonTask, "karbon_task_key", "/WorkItems/{key}/Tasks"),
        EntityConfig("notes", KarbonNote, "karbon_note_key", "/WorkItems/{key}/Notes"),
        EntityConfig(
            "invoices", KarbonInvoice, "karbon_invoice_key", "/Invoices",
            ODataQuery(orderby="InvoiceDate desc", count=True),
        ),
        EntityConfig(
            "timesheets", KarbonTimeEntry, "karbon_time_entry_key", "/Timesheets",
            ODataQuery(expand="TimeEntries", orderby="StartDate desc", count=True),
        ),
    )
}
ENTITY_ORDER = tuple(ENTITIES)

# Resource type → (kind, single-entity path). $expand comes from ENTITIES[kind]
WEBHOOK_RESOURCES = {
    "WorkItem": ("work_items", "/WorkItems/{key}"),
    "Contact": ("contacts", "/Contacts/{key}"),
    "Organization": ("organizations", "/Organizations/{key}"),
    "Note": ("notes", "/Notes/{key}"),
    "ContentItem": ("notes", "/Notes/{key}"),
}
# Kinds whose upsert can resolve a work item's soft client reference
LINKING_KINDS = ("contacts", "organizations", "work_items")
WORK_ITEM_UPSERT_EVENTS = ("Created", "Updated", "StatusChanged")


def normalize_kinds(kinds: Optional[Iterable[str]]) -> List[str]:
    """
    Validate requested kinds and return them in sync order.

    Accepts dashed names as used in query strings ("work-items").
    None or empty means every kind.

    Raises:
        ValueError: if any kind is unknown.
    """
    requested = {
        k.strip().lower().replace("-", "_") for k in (kinds or []) if k and k.strip()
    }
    if not requested:
        return list(ENTITY_ORDER)
    unknown = requested - set(ENTITY_ORDER)
    if unknown:
        raise ValueError(f"Unknown entity kind(s): {', '.join(sorted(unknown))}")
    return [k for k in ENTITY_ORDER if k in requested]


@dataclass
class KindResult:
    kind: str
    fetched: int = 0
    synced: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    # Set when the fetch itself failed; no records were written
    error: Optional[str] = None
    error_messages: List[str] = field(default_factory=list)
    cursor: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fetched": self.fetched,
            "synced": self.synced,
            "updated": self.updated,
            "errors": self.errors,
            "skipped": self.skipped,
        }
        if self.error:
            data["error"] = self.error
        if self.cursor:
            data["cursor"] = self.cursor.isoformat()
        return data


@dataclass
class SyncSummary:
    sync_type: str
    trigger: str
    results: Dict[str, KindResult] = field(default_factory=dict)
    link_result: Optional[LinkResult] = None
    run_id: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def fetched(self) -> int:
        return sum(r.fetched for r in self.results.values())

    @property
    def synced(self) -> int:
        return sum(r.synced for r in self.results.values())

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.results.values())

    @property
    def errors(self) -> int:
        link_errors = self.link_result.errors if self.link_result else 0
        return sum(r.errors for r in self.results.values()) + link_errors

    @property
    def success(self) -> bool:
        """True when every kind was fetched; record-level failures are counted in errors."""
        return all(r.error is None for r in self.results.values())

    @property
    def error_details(self) -> List[str]:
        details: List[str] = []
        for kind, r in self.results.items():
            if r.error:
                details.append(f"{kind}: {r.error}")
            details.extend(f"{kind}: {m}" for m in r.error_messages)
        if self.link_result:
            details.extend(self.link_result.error_messages)
        return details

    def to_response(self) -> Dict[str, Any]:
        finished = self.finished_at or datetime.utcnow()
        response: Dict[str, Any] = {
            "success": self.success,
            "synced": self.synced,
            "updated": self.updated,
            "errors": self.errors,
            "syncType": self.sync_type,
            "trigger": self.trigger,
            "runId": self.run_id,
            "duration": f"{(finished - self.started_at).total_seconds():.2f}s",
            "results": {kind: r.to_dict() for kind, r in self.results.items()},
        }
        details = self.error_details
        if details:
            response["errorDetails"] = details[:MAX_ERROR_DETAILS]
        if self.link_result:
            response["linkResult"] = self.link_result.to_dict()
        return response


@dataclass
class WebhookResult:
    event_type: str
    resource_key: Optional[str]
    action: str  # "upserted", "soft-deleted", "ignored", "failed"
    result: Optional[KindResult] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and (self.result is None or self.result.errors == 0)

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "success": self.success,
            "eventType": self.event_type,
            "resourceKey": self.resource_key,
            "action": self.action,
            "processedAt": datetime.utcnow().isoformat(),
        }
        if self.result is not None:
            response["synced"] = self.result.synced
            response["updated"] = self.result.updated
            response["errors"] = self.result.errors
            if self.result.error_messages:
                response["errorDetails"] = self.result.error_messages
        if self.error:
            response["error"] = self.error
        return response


class KarbonSyncService:
    """Orchestrates Karbon → DB sync for bulk runs and single webhook events."""

    def __init__(
        self,
        client: KarbonClient,
        engine: Engine,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            client: KarbonClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine for the local store.
            settings: Batch sizes and throttling; defaults to get_settings().
        """
        settings = settings or get_settings()
        self.client = client
        self.engine = engine
        self.sink = UpsertSink(engine, batch_size=settings.upsert_batch_size)
        self.cursors = CursorStore(engine)
        self.nested_batch_size = settings.nested_fetch_batch_size
        self.nested_delay = settings.nested_fetch_delay_seconds

    async def run(
        self,
        kinds: Optional[Iterable[str]] = None,
        incremental: bool = False,
        trigger: str = "manual",
    ) -> SyncSummary:
        """
        Sync the requested kinds (all by default) and return a summary.

        Raises:
            ValueError: unknown kind requested.
            sqlalchemy.exc.OperationalError: the store is unreachable.
        """
        ordered = normalize_kinds(kinds)
        summary = SyncSummary(sync_type="incremental" if incremental else "full", trigger=trigger)
        run = self._create_sync_run(summary.sync_type, trigger)
        summary.run_id = run.id
        logger.info(
            "Karbon %s sync started (run %s, trigger=%s): %s",
            summary.sync_type, run.id, trigger, ", ".join(ordered),
        )

        try:
            for kind in ordered:
                summary.results[kind] = await self._sync_kind(ENTITIES[kind], incremental)
                if kind == "work_items":
                    summary.link_result = link_soft_foreign_keys(self.engine)
            if summary.link_result is None and {"contacts", "organizations"} & set(ordered):
                summary.link_result = link_soft_foreign_keys(self.engine)
        except asyncio.CancelledError:
            summary.finished_at = datetime.utcnow()
            self._finish_sync_run(run, summary, status="failed", extra_error="cancelled")
            raise

        summary.finished_at = datetime.utcnow()
        status = "completed" if summary.success and summary.errors == 0 else "completed_with_errors"
        self._finish_sync_run(run, summary, status=status)
        logger.info(
            "Karbon sync finished (run %s): synced=%d updated=%d errors=%d",
            run.id, summary.synced, summary.updated, summary.errors,
        )
        return summary

    async def handle_webhook(self, payload: WebhookPayload) -> WebhookResult:
        """
        Apply a single-entity webhook event through the bulk mapper and sink.

        Raises:
            WebhookPayloadError: a handled resource type without its key in Data.
        """
        resource_type = payload.resource_type
        if resource_type not in WEBHOOK_RESOURCES:
            logger.info("Ignoring Karbon webhook event %s", payload.event_type)
            return WebhookResult(payload.event_type, None, action="ignored")

        key = payload.resource_key
        if not key:
            raise WebhookPayloadError(f"{payload.event_type} event without a resource key in Data")

        kind, path = WEBHOOK_RESOURCES[resource_type]
        config = ENTITIES[kind]
        if resource_type == "WorkItem" and payload.action == "Deleted":
            if not self._mark_work_item_deleted(key):
                return WebhookResult(payload.event_type, key, action="ignored")
            return WebhookResult(payload.event_type, key, action="soft-deleted")
        if resource_type == "WorkItem" and payload.action not in WORK_ITEM_UPSERT_EVENTS:
            return WebhookResult(payload.event_type, key, action="ignored")
        if payload.action == "Deleted":
            # No deletion marker on client tables; the row stays as last synced
            return WebhookResult(payload.event_type, key, action="ignored")

        summary = SyncSummary(sync_type="webhook", trigger="webhook")
        run = self._create_sync_run("webhook", "webhook")
        summary.run_id = run.id

        fetched = await self.client.fetch_one(path.format(key=key), expand=config.expand)
        result = KindResult(kind=kind)
        summary.results[kind] = result
        if not fetched.ok:
            result.error = fetched.error
            summary.finished_at = datetime.utcnow()
            self._finish_sync_run(run, summary, status="failed")
            return WebhookResult(payload.event_type, key, action="failed", result=result, error=fetched.error)

        records = fetched.records
        for record in records:
            for context_key in ("WorkItemKey", "ContactKey"):
                if payload.data.get(context_key):
                    record.setdefault(context_key, payload.data[context_key])

        result.fetched = len(records)
        self._write(config, [partial(map_to_local, r, kind) for r in records], result)
        if kind in LINKING_KINDS and result.synced:
            summary.link_result = link_soft_foreign_keys(self.engine)

        summary.finished_at = datetime.utcnow()
        self._finish_sync_run(
            run, summary, status="completed" if summary.errors == 0 else "completed_with_errors"
        )
        logger.info("Karbon webhook %s applied to %s %s", payload.event_type, kind, key)
        return WebhookResult(payload.event_type, key, action="upserted", result=result)

    # ─── Per-kind pipeline ────────────────────────────────────────────────────

    async def _sync_kind(self, config: EntityConfig, incremental: bool) -> KindResult:
        result = KindResult(kind=config.kind)
        try:
            await self._run_kind(config, incremental, result)
        except Exception as exc:
            logger.exception("Sync of %s failed", config.kind)
            result.error = f"{type(exc).__name__}: {exc}"
        return result

    async def _run_kind(self, config: EntityConfig, incremental: bool, result: KindResult) -> None:
        raw, fetch_errors = await self._fetch(config)
        if raw is None:
            result.error = fetch_errors[0]
            logger.warning("Skipping %s: %s", config.kind, result.error)
            return
        result.errors += len(fetch_errors)
        result.error_messages.extend(fetch_errors)

        jobs = self._mapping_jobs(config, raw)
        result.fetched = len(jobs)
        cursor = self.cursors.get_cursor(config.kind) if incremental else None
        written = self._write(config, jobs, result, cursor=cursor)

        if result.errors == 0:
            result.cursor = self.cursors.set_cursor(config.kind, max_modified(written))
        else:
            result.cursor = self.cursors.get_cursor(config.kind)
            logger.warning(
                "%s: %d error(s); cursor left at %s", config.kind, result.errors, result.cursor
            )
        logger.info(
            "%s: fetched=%d synced=%d updated=%d skipped=%d errors=%d",
            config.kind, result.fetched, result.synced, result.updated, result.skipped, result.errors,
        )

    async def _fetch(self, config: EntityConfig):
        """Returns (records, errors). records is None when the whole fetch failed."""
        if not config.nested:
            fetched = await self.client.fetch_all(config.path, config.query)
            if not fetched.ok:
                return None, [fetched.error]
            if config.records_field:
                return [
                    item
                    for record in fetched.records
                    for item in as_list(record.get(config.records_field))
                ], []
            return fetched.records, []

        parent_keys = self._work_item_keys()
        nested = await self.client.fetch_nested(
            parent_keys,
            lambda key: config.path.format(key=key),
            batch_size=self.nested_batch_size,
            delay=self.nested_delay,
        )
        records = []
        for parent_key, children in nested.by_parent.items():
            for child in children:
                child.setdefault("WorkItemKey", parent_key)
                records.append(child)
        return records, nested.errors

    def _mapping_jobs(self, config: EntityConfig, raw: List[Dict[str, Any]]) -> List[Callable[[], Dict]]:
        if config.kind == "work_statuses":
            return [partial(map_work_status, record, index) for index, record in enumerate(raw)]
        if config.kind != "timesheets":
            return [partial(map_to_local, record, config.kind) for record in raw]

        jobs: List[Callable[[], Dict]] = []
        for sheet in raw:
            if "TimeEntries" not in sheet:
                # Already a flat time entry
                jobs.append(partial(map_time_entry, sheet, None, 0))
                continue
            for index, entry in enumerate(as_list(sheet.get("TimeEntries"))):
                jobs.append(partial(map_time_entry, entry, sheet, index))
        return jobs

    def _write(
        self,
        config: EntityConfig,
        jobs: List[Callable[[], Dict]],
        result: KindResult,
        cursor: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Map, filter by cursor and upsert. Returns the records that were written."""
        mapped: List[Dict[str, Any]] = []
        for job in jobs:
            try:
                record = job()
            except Exception as exc:
                result.errors += 1
                result.error_messages.append(f"mapping failed: {exc}")
                continue
            if not record.get(config.natural_key):
                result.errors += 1
                result.error_messages.append(f"record without {config.natural_key} skipped")
                continue
            mapped.append(record)

        if cursor is not None:
            fresh = filter_modified_after(mapped, cursor)
            result.skipped = len(mapped) - len(fresh)
            mapped = fresh
        if not mapped:
            return []

        upserted = self.sink.upsert_batch(config.model, mapped, config.natural_key)
        result.synced += upserted.synced
        result.updated += upserted.existing
        result.errors += upserted.errors
        result.error_messages.extend(upserted.error_messages)
        return mapped if upserted.errors == 0 else []

    # ─── Store helpers ────────────────────────────────────────────────────────

    def _work_item_keys(self) -> List[str]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(WorkItem.karbon_work_item_key).where(
                        or_(WorkItem.status.is_(None), WorkItem.status != "Deleted")
                    )
                ).all()
            )

    def _mark_work_item_deleted(self, key: str) -> bool:
        """Soft-delete a work item. Returns False when the key is not stored locally."""
        with Session(self.engine) as s:
            work_item = s.exec(
                select(WorkItem).where(WorkItem.karbon_work_item_key == key)
            ).first()
            if work_item is None:
                return False
            work_item.status = "Deleted"
            work_item.updated_at = datetime.utcnow()
            s.add(work_item)
            s.commit()
        logger.info("Work item %s marked Deleted", key)
        return True

    def _create_sync_run(self, sync_type: str, trigger: str) -> SyncRun:
        run = SyncRun(started_at=datetime.utcnow(), sync_type=sync_type, trigger=trigger, status="running")
        with Session(self.engine) as s:
            s.add(run)
            s.commit()
            s.refresh(run)
        return run

    def _finish_sync_run(
        self,
        run: SyncRun,
        summary: SyncSummary,
        *,
        status: str,
        extra_error: Optional[str] = None,
    ) -> None:
        details = summary.error_details
        if extra_error:
            details.append(extra_error)
        with Session(self.engine) as s:
            db_run = s.get(SyncRun, run.id)
            db_run.status = status
            db_run.finished_at = summary.finished_at or datetime.utcnow()
            db_run.records_fetched = summary.fetched
            db_run.records_synced = summary.synced
            db_run.records_failed = summary.errors
            db_run.error_details = details[:MAX_ERROR_DETAILS] or None
            s.add(db_run)
            s.commit()
