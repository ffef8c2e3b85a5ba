"""Sync trigger, status and health routes."""
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from mottahub.db.engine import get_engine, get_session
from mottahub.karbon.client import KarbonClient, KarbonCredentialsError
from mottahub.karbon.cursor import CursorStore
from mottahub.karbon.sync_service import ENTITY_ORDER, KarbonSyncService, normalize_kinds
from mottahub.models.sync import SyncRun

router = APIRouter()

STALE_AFTER = timedelta(hours=24)


class SyncStatusResponse(BaseModel):
    status: str
    run_id: Optional[int] = None
    sync_type: Optional[str] = None
    trigger: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    records_fetched: Optional[int] = None
    records_synced: Optional[int] = None
    records_failed: Optional[int] = None
    error_details: Optional[List[str]] = None


class EntityHealth(BaseModel):
    entity: str
    last_sync: Optional[datetime]
    cursor: Optional[datetime]
    stale: bool


class SyncHealthResponse(BaseModel):
    status: str  # "healthy", "warning", "critical"
    entities: List[EntityHealth]
    stale_entities: List[str]
    recent_syncs: List[SyncStatusResponse]
    checked_at: datetime


async def get_karbon_client() -> AsyncIterator[KarbonClient]:
    """FastAPI dependency yielding a configured KarbonClient; 503 without credentials."""
    try:
        client = KarbonClient.from_settings()
    except KarbonCredentialsError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    async with client:
        yield client


def _status_from_run(run: SyncRun) -> SyncStatusResponse:
    return SyncStatusResponse(
        status=run.status,
        run_id=run.id,
        sync_type=run.sync_type,
        trigger=run.trigger,
        started_at=run.started_at,
        finished_at=run.finished_at,
        records_fetched=run.records_fetched,
        records_synced=run.records_synced,
        records_failed=run.records_failed,
        error_details=run.error_details,
    )


async def _run_sync(
    client: KarbonClient,
    engine: Engine,
    incremental: bool,
    entities: Optional[str],
) -> dict:
    try:
        kinds = normalize_kinds(entities.split(",") if entities else None)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    service = KarbonSyncService(client=client, engine=engine)
    try:
        summary = await service.run(kinds=kinds, incremental=incremental, trigger="api")
    except OperationalError as exc:
        raise HTTPException(status_code=503, detail=f"Local store unavailable: {exc.orig}")
    return summary.to_response()


@router.post("")
async def trigger_sync(
    incremental: bool = Query(False),
    entities: Optional[str] = Query(None, description="Comma separated, e.g. contacts,work-items"),
    client: KarbonClient = Depends(get_karbon_client),
    engine: Engine = Depends(get_engine),
):
    """
    Run a sync now and return its summary.

    The run completes before the response is sent; per-kind failures are
    reported in the body with a 200 status.
    """
    return await _run_sync(client, engine, incremental, entities)


@router.get("")
async def trigger_sync_get(
    incremental: bool = Query(False),
    entities: Optional[str] = Query(None),
    client: KarbonClient = Depends(get_karbon_client),
    engine: Engine = Depends(get_engine),
):
    """Same as POST; cron services commonly only issue GETs."""
    return await _run_sync(client, engine, incremental, entities)


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(session: Session = Depends(get_session)):
    """Return the status of the most recent sync run."""
    run = session.exec(
        select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
    ).first()
    if not run:
        return SyncStatusResponse(status="never_run")
    return _status_from_run(run)


@router.get("/health", response_model=SyncHealthResponse)
def sync_health(
    engine: Engine = Depends(get_engine),
    session: Session = Depends(get_session),
):
    """Per-kind freshness: a kind is stale when it has not synced cleanly for 24h."""
    now = datetime.utcnow()
    cursors = CursorStore(engine).all_cursors()

    entities = []
    for kind in ENTITY_ORDER:
        row = cursors.get(kind)
        last_sync = row.updated_at if row else None
        entities.append(
            EntityHealth(
                entity=kind,
                last_sync=last_sync,
                cursor=row.cursor if row else None,
                stale=last_sync is None or last_sync < now - STALE_AFTER,
            )
        )

    stale = [e.entity for e in entities if e.stale]
    if not stale:
        status = "healthy"
    elif len(stale) <= 2:
        status = "warning"
    else:
        status = "critical"

    recent = session.exec(
        select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(5)
    ).all()
    return SyncHealthResponse(
        status=status,
        entities=entities,
        stale_entities=stale,
        recent_syncs=[_status_from_run(r) for r in recent],
        checked_at=now,
    )
