"""
Soft foreign-key reconciliation for work items.

Work items arrive carrying Karbon's (client_type, karbon_client_key) pair.
After contacts, organizations and work items have been written, this pass
resolves the pair to a local contact_id or organization_id. A linked work
item has exactly one of the two set, on the column matching its client_type.

Rows already linked to the client their key names are not touched, so
repeated runs converge and a second run links nothing. Rows whose link no
longer matches (the client key changed, the client type changed, or the key
was removed) are re-pointed or cleared.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Type

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, or_, select

from mottahub.models.client import Contact, Organization
from mottahub.models.work import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    linked: int = 0
    errors: int = 0
    # Work items whose client key matched no local row; not an error
    unresolved: int = 0
    # Stale links removed because they no longer match the client reference
    unlinked: int = 0
    error_messages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"linked": self.linked, "errors": self.errors, "unresolved": self.unresolved}


def _unlink_stale(session: Session, client_type: str, fk_column: str, result: LinkResult) -> None:
    """Clear fk_column on rows that no longer reference a client of client_type."""
    fk = getattr(WorkItem, fk_column)
    stale = session.exec(
        select(WorkItem).where(
            fk.is_not(None),
            or_(
                WorkItem.client_type.is_(None),
                WorkItem.client_type != client_type,
                WorkItem.karbon_client_key.is_(None),
            ),
        )
    ).all()
    for work_item in stale:
        setattr(work_item, fk_column, None)
        session.add(work_item)
        result.unlinked += 1


def _link(
    session: Session,
    client_type: str,
    fk_column: str,
    other_column: str,
    target: Type[SQLModel],
    target_key: str,
    result: LinkResult,
) -> None:
    fk = getattr(WorkItem, fk_column)
    key_column = getattr(target, target_key)
    # Key of the row the current link points at; NULL when unlinked or dangling
    linked_key = select(key_column).where(target.id == fk).scalar_subquery()

    candidates = session.exec(
        select(WorkItem).where(
            WorkItem.client_type == client_type,
            WorkItem.karbon_client_key.is_not(None),
            or_(
                getattr(WorkItem, other_column).is_not(None),
                linked_key.is_(None),
                linked_key != WorkItem.karbon_client_key,
            ),
        )
    ).all()
    if not candidates:
        return

    keys = {wi.karbon_client_key for wi in candidates}
    ids = {
        key: local_id
        for key, local_id in session.exec(
            select(key_column, target.id).where(key_column.in_(keys))
        ).all()
    }

    for work_item in candidates:
        local_id: Optional[int] = ids.get(work_item.karbon_client_key)
        if getattr(work_item, other_column) is not None:
            setattr(work_item, other_column, None)
            result.unlinked += 1
        if local_id is None:
            if getattr(work_item, fk_column) is not None:
                result.unlinked += 1
            setattr(work_item, fk_column, None)
            session.add(work_item)
            result.unresolved += 1
            continue
        setattr(work_item, fk_column, local_id)
        session.add(work_item)
        result.linked += 1


def link_soft_foreign_keys(engine: Engine) -> LinkResult:
    """
    Patch contact_id / organization_id on work items from their client keys.

    Each client type is resolved in its own transaction; a failure in one is
    recorded in the result and does not undo the other.
    """
    result = LinkResult()
    passes = (
        ("Contact", "contact_id", "organization_id", Contact, "karbon_contact_key"),
        ("Organization", "organization_id", "contact_id", Organization, "karbon_organization_key"),
    )
    for client_type, fk_column, other_column, target, target_key in passes:
        linked_before = result.linked
        try:
            with Session(engine) as session:
                _unlink_stale(session, client_type, fk_column, result)
                _link(session, client_type, fk_column, other_column, target, target_key, result)
                session.commit()
        except SQLAlchemyError as exc:
            # Links staged in the failed transaction were rolled back
            failed = result.linked - linked_before
            result.linked = linked_before
            result.errors += max(failed, 1)
            result.error_messages.append(f"{client_type} linking failed: {exc}")
            logger.warning("Reconciliation of %s work items failed: %s", client_type, exc)

    logger.info(
        "Reconciliation: linked=%d unlinked=%d unresolved=%d errors=%d",
        result.linked, result.unlinked, result.unresolved, result.errors,
    )
    return result
