"""
Idempotent batched upsert of mapped records into the local store.

Each chunk is a single INSERT ... ON CONFLICT (natural_key) DO UPDATE
statement executed in its own transaction, so a failing chunk never rolls
back chunks already written. The surrogate id and any column the mapper did
not emit (contact_id / organization_id on work items) are never part of the
update set.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Type

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class UpsertResult:
    synced: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    # Natural keys that were already present before their chunk was written
    existing: int = 0


class UpsertSink:
    def __init__(self, engine: Engine, batch_size: int = 50):
        if engine.dialect.name not in _INSERTS:
            raise ValueError(f"Unsupported database dialect for upsert: {engine.dialect.name}")
        self._engine = engine
        self._insert = _INSERTS[engine.dialect.name]
        self.batch_size = batch_size

    def upsert_batch(
        self,
        model: Type[SQLModel],
        records: Sequence[Dict[str, Any]],
        natural_key: str,
    ) -> UpsertResult:
        """
        Upsert records into model's table keyed by natural_key.

        Records without a natural key are counted as errors. Duplicate keys
        in the input collapse to the last occurrence. A failed chunk adds its
        size to errors and processing continues with the next chunk.
        """
        table = model.__table__
        columns = {c.name for c in table.columns} - {"id"}
        result = UpsertResult()

        rows: Dict[Any, Dict[str, Any]] = {}
        for record in records:
            key = record.get(natural_key)
            if key in (None, ""):
                result.errors += 1
                result.error_messages.append(f"{table.name}: record without {natural_key} skipped")
                continue
            rows[key] = {k: v for k, v in record.items() if k in columns}

        unique_rows = list(rows.values())
        for start in range(0, len(unique_rows), self.batch_size):
            chunk = unique_rows[start:start + self.batch_size]
            try:
                existing = self._write_chunk(table, chunk, natural_key)
            except SQLAlchemyError as exc:
                message = f"{table.name} chunk {start // self.batch_size + 1}: {exc.__class__.__name__}: {exc}"
                logger.warning("Upsert failed for %d %s row(s): %s", len(chunk), table.name, exc)
                result.errors += len(chunk)
                result.error_messages.append(message[:500])
                continue
            result.synced += len(chunk)
            result.existing += existing

        return result

    def _write_chunk(self, table, chunk: List[Dict[str, Any]], natural_key: str) -> int:
        keys = [row[natural_key] for row in chunk]
        # Every row in a multi-VALUES insert must carry the same columns
        names = sorted({name for row in chunk for name in row})
        values = [{name: row.get(name) for name in names} for row in chunk]

        stmt = self._insert(table).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[natural_key],
            set_={name: stmt.excluded[name] for name in names if name != natural_key},
        )
        with self._engine.begin() as conn:
            existing = conn.execute(
                select(table.c[natural_key]).where(table.c[natural_key].in_(keys))
            ).all()
            conn.execute(stmt)
        return len(existing)
