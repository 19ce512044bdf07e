"""Point-in-time reconstruction and history listing over the revision store."""
from __future__ import annotations

import copy
import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from sqlalchemy import Select
from sqlalchemy.orm import Session

from auditkit.config import get_settings
from auditkit.models.revision import ChangeKind, EntityRevision, RevisionInfo
from auditkit.schemas.revision import FieldChange, RevisionDiff, RevisionRead
from auditkit.services.revisions import entity_key, get_revision, identity_select, to_revision_read
from auditkit.utils.audit import diff_payloads
from auditkit.utils.errors import NotFoundError
from auditkit.utils.time import ensure_utc

logger = logging.getLogger(__name__)


class RevisionHistory:
    """Lazy, restartable sequence of revisions.

    Nothing is read until iteration starts; every new iteration runs the
    query again and streams rows in batches.
    """

    def __init__(self, db: Session, statement: Select, *, batch_size: int) -> None:
        self._db = db
        self._statement = statement
        self._batch_size = batch_size

    def __iter__(self) -> Iterator[RevisionRead]:
        result = self._db.execute(self._statement.execution_options(yield_per=self._batch_size))
        try:
            for entity_revision, info in result:
                yield to_revision_read(entity_revision, info)
        finally:
            result.close()

    def __repr__(self) -> str:
        return f"<RevisionHistory(batch_size={self._batch_size})>"


def _resolve_payload(
    row: tuple[EntityRevision, RevisionInfo] | None, entity_type: str, entity_id: Any, **point: Any
) -> dict[str, Any]:
    if row is None:
        raise NotFoundError(
            "No revision at or before the requested point.",
            entity_type=entity_type,
            entity_id=entity_key(entity_id),
            **point,
        )
    entity_revision, _ = row
    if entity_revision.change_kind is ChangeKind.DELETE:
        raise NotFoundError(
            "Entity was deleted at or before the requested point.",
            entity_type=entity_type,
            entity_id=entity_key(entity_id),
            deleted_at_revision=entity_revision.revision_id,
            **point,
        )
    return copy.deepcopy(entity_revision.payload)


def as_of(db: Session, entity_type: str, entity_id: Any, revision_id: int) -> dict[str, Any]:
    """Return the entity's payload as of global revision ``revision_id``."""

    row = db.execute(
        identity_select(entity_type, entity_id)
        .where(EntityRevision.revision_id <= revision_id)
        .order_by(EntityRevision.revision_id.desc())
        .limit(1)
    ).first()
    logger.debug(
        "as_of lookup",
        extra={"entity_type": entity_type, "entity_id": entity_key(entity_id), "revision_id": revision_id},
    )
    return _resolve_payload(row, entity_type, entity_id, revision_id=revision_id)


def as_of_time(db: Session, entity_type: str, entity_id: Any, at: datetime) -> dict[str, Any]:
    """Return the entity's payload as of wall-clock time ``at``."""

    at = ensure_utc(at)
    row = db.execute(
        identity_select(entity_type, entity_id)
        .where(RevisionInfo.timestamp <= at)
        .order_by(EntityRevision.revision_id.desc())
        .limit(1)
    ).first()
    return _resolve_payload(row, entity_type, entity_id, at=at.isoformat())


def history(
    db: Session,
    entity_type: str,
    entity_id: Any,
    *,
    from_revision: int | None = None,
    to_revision: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    batch_size: int | None = None,
) -> RevisionHistory:
    """Return the identity's revisions in ascending order within inclusive bounds."""

    stmt = identity_select(entity_type, entity_id)
    if from_revision is not None:
        stmt = stmt.where(EntityRevision.revision_id >= from_revision)
    if to_revision is not None:
        stmt = stmt.where(EntityRevision.revision_id <= to_revision)
    if since is not None:
        stmt = stmt.where(RevisionInfo.timestamp >= ensure_utc(since))
    if until is not None:
        stmt = stmt.where(RevisionInfo.timestamp <= ensure_utc(until))
    stmt = stmt.order_by(EntityRevision.revision_id.asc())
    return RevisionHistory(db, stmt, batch_size=batch_size or get_settings().REVISION_HISTORY_BATCH_SIZE)


def diff(db: Session, entity_type: str, entity_id: Any, revision_a: int, revision_b: int) -> RevisionDiff:
    """Compare the payloads recorded at two revisions of the same identity."""

    old = get_revision(db, entity_type, entity_id, revision_a)
    new = get_revision(db, entity_type, entity_id, revision_b)
    changes = diff_payloads(old.payload, new.payload)
    return RevisionDiff(
        entity_type=entity_type,
        entity_id=entity_key(entity_id),
        revision_a=revision_a,
        revision_b=revision_b,
        changes={key: FieldChange(**change) for key, change in changes.items()},
    )


__all__ = ["RevisionHistory", "as_of", "as_of_time", "history", "diff"]
