"""
Per-kind incremental sync cursors.

A cursor is the highest karbon_modified_at that has been durably written for
an entity kind. It lives in the sync_cursors table and is read fresh on every
call. It only ever moves forward.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mottahub.models.sync import SyncCursor


class CursorStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    def get_cursor(self, kind: str) -> Optional[datetime]:
        with Session(self._engine) as session:
            row = session.exec(
                select(SyncCursor).where(SyncCursor.entity_kind == kind)
            ).first()
            return row.cursor if row else None

    def set_cursor(self, kind: str, ts: Optional[datetime]) -> Optional[datetime]:
        """
        Record a successful sync of kind and advance its cursor to ts.

        A ts that is None or not later than the stored cursor keeps the
        stored value; updated_at is refreshed either way. Returns the cursor
        value in effect afterwards.
        """
        with Session(self._engine) as session:
            row = session.exec(
                select(SyncCursor).where(SyncCursor.entity_kind == kind)
            ).first()
            if row is None:
                row = SyncCursor(entity_kind=kind)
            if ts is not None and (row.cursor is None or ts > row.cursor):
                row.cursor = ts
            row.updated_at = datetime.utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.cursor

    def all_cursors(self) -> Dict[str, SyncCursor]:
        with Session(self._engine) as session:
            rows = session.exec(select(SyncCursor)).all()
            return {row.entity_kind: row for row in rows}


def filter_modified_after(
    records: Iterable[Dict[str, Any]], cursor: Optional[datetime]
) -> List[Dict[str, Any]]:
    """
    Keep mapped records modified strictly after cursor.

    Records without karbon_modified_at are always kept: there is no evidence
    they are unchanged. With no cursor every record is kept.
    """
    if cursor is None:
        return list(records)
    return [
        r for r in records
        if r.get("karbon_modified_at") is None or r["karbon_modified_at"] > cursor
    ]


def max_modified(records: Iterable[Dict[str, Any]]) -> Optional[datetime]:
    stamps = [r["karbon_modified_at"] for r in records if r.get("karbon_modified_at")]
    return max(stamps) if stamps else None
