"""Append-only revision store.

Every committed write produces one ``RevisionInfo`` row (the global revision:
who and when) and one ``EntityRevision`` row per entity touched in that unit
of work (what kind of change, and the full field state afterwards). Revision
ids come from a single counter row that is incremented inside the writing
transaction, so ids are assigned in commit order across all entity types.
"""
from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.session import SessionTransaction

from auditkit.config import KEY_REUSE_FORBID, KEY_REUSE_RESTART, get_settings
from auditkit.models.revision import GLOBAL_COUNTER, ChangeKind, EntityRevision, RevisionCounter, RevisionInfo
from auditkit.schemas.revision import RevisionInfoRead, RevisionRead
from auditkit.utils.errors import (
    AuditError,
    ConcurrentWriteConflict,
    InvalidRevisionSequenceError,
    MissingActorError,
    NotFoundError,
    StorageError,
)
from auditkit.utils.time import ensure_utc

logger = logging.getLogger(__name__)

_OPEN_REVISION_KEY = "auditkit.open_revision"
_REVISION_TABLES = ("revision_counter", "revision_info", "entity_revisions")
# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

# Shared by every store in the process so all writers queue on one lock.
_WRITE_LOCK = threading.RLock()


@dataclass
class _OpenRevision:
    transaction: SessionTransaction | None
    info: RevisionInfo
    identities: set[tuple[str, str]] = field(default_factory=set)


def entity_key(entity_id: Any) -> str:
    """Return the stored form of an entity identity."""

    return str(entity_id)


def translate_storage_error(exc: SQLAlchemyError) -> AuditError:
    """Map a SQLAlchemy failure to a conflict (retryable) or a storage error."""

    if isinstance(exc, StaleDataError):
        return ConcurrentWriteConflict("Entity changed concurrently.", reason="stale_data")
    if isinstance(exc, IntegrityError):
        statement = (exc.statement or "").lower()
        if any(table in statement for table in _REVISION_TABLES):
            return ConcurrentWriteConflict("Revision id already taken by a concurrent commit.", reason="integrity")
        return StorageError("Write rejected by a storage constraint.", reason="integrity")
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate in _RETRYABLE_SQLSTATES or "database is locked" in str(orig).lower():
            return ConcurrentWriteConflict("Transaction aborted by a concurrent commit.", reason="isolation")
    return StorageError("Storage failure.", reason=exc.__class__.__name__)


def revision_select() -> Select:
    return select(EntityRevision, RevisionInfo).join(RevisionInfo, EntityRevision.revision_id == RevisionInfo.id)


def identity_select(entity_type: str, entity_id: Any) -> Select:
    return revision_select().where(
        EntityRevision.entity_type == entity_type,
        EntityRevision.entity_id == entity_key(entity_id),
    )


def to_revision_read(entity_revision: EntityRevision, info: RevisionInfo) -> RevisionRead:
    return RevisionRead(
        revision_id=entity_revision.revision_id,
        entity_type=entity_revision.entity_type,
        entity_id=entity_revision.entity_id,
        change_kind=entity_revision.change_kind,
        actor=info.actor,
        timestamp=ensure_utc(info.timestamp),
        payload=copy.deepcopy(entity_revision.payload),
    )


class RevisionStore:
    """Write path of the revision history.

    Writes go through :meth:`unit_of_work`, which serializes writers holding
    the same ``write_lock`` (by default one lock for the whole process) and
    commits the live rows and revision rows together. Writers that do not
    share the lock, such as other processes, are kept apart by the database:
    the counter row update orders revision ids by commit, and the version
    column of audited rows turns a write based on a stale row into a
    ``ConcurrentWriteConflict``.
    """

    def __init__(self, *, key_reuse: str | None = None, write_lock: threading.RLock | None = None) -> None:
        key_reuse = key_reuse or get_settings().REVISION_KEY_REUSE
        if key_reuse not in {KEY_REUSE_FORBID, KEY_REUSE_RESTART}:
            raise ValueError(f"Unknown key reuse policy: {key_reuse!r}")
        self.key_reuse = key_reuse
        self._write_lock = write_lock or _WRITE_LOCK

    @contextmanager
    def unit_of_work(self, db: Session) -> Iterator[Session]:
        """Run a block of writes as one atomic, serialized commit."""

        with self._write_lock:
            try:
                yield db
                db.commit()
            except AuditError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                error = translate_storage_error(exc)
                logger.warning(
                    "Write aborted",
                    extra={"code": error.code, "reason": error.details.get("reason")},
                )
                raise error from exc
            except BaseException:
                db.rollback()
                raise
            finally:
                db.info.pop(_OPEN_REVISION_KEY, None)

    def record(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: Any,
        change_kind: ChangeKind,
        payload: Mapping[str, Any],
        actor: str,
        timestamp: datetime,
    ) -> int:
        """Append a snapshot for one entity and return its revision id.

        Must run inside the transaction that writes the live row. The first
        call in a transaction allocates the revision; later calls in the same
        transaction share it.
        """

        if not actor or not str(actor).strip():
            raise MissingActorError("Revisions require an actor.")
        change_kind = ChangeKind(change_kind)
        key = entity_key(entity_id)

        revision = self._open_revision(db, actor=str(actor).strip(), timestamp=timestamp)
        if (entity_type, key) in revision.identities:
            raise InvalidRevisionSequenceError(
                "Identity already recorded in this revision.",
                entity_type=entity_type,
                entity_id=key,
                revision_id=revision.info.id,
            )
        self._check_sequence(db, entity_type, key, change_kind)

        db.add(
            EntityRevision(
                revision_id=revision.info.id,
                entity_type=entity_type,
                entity_id=key,
                change_kind=change_kind,
                payload=copy.deepcopy(dict(payload)),
            )
        )
        db.flush()
        revision.identities.add((entity_type, key))
        logger.debug(
            "Revision row staged",
            extra={
                "entity_type": entity_type,
                "entity_id": key,
                "revision_id": revision.info.id,
                "change_kind": change_kind.value,
            },
        )
        return revision.info.id

    def purge_deleted(self, db: Session, *, deleted_at_or_before: int) -> int:
        """Remove complete histories of identities deleted at or before a revision.

        Administrative retention only; identities whose latest revision is not
        a DELETE are left untouched. Returns the number of snapshot rows removed.
        """

        with self.unit_of_work(db):
            latest = (
                select(
                    EntityRevision.entity_type,
                    EntityRevision.entity_id,
                    func.max(EntityRevision.revision_id).label("latest_id"),
                )
                .group_by(EntityRevision.entity_type, EntityRevision.entity_id)
                .subquery()
            )
            stmt = (
                select(EntityRevision.entity_type, EntityRevision.entity_id)
                .join(
                    latest,
                    (EntityRevision.entity_type == latest.c.entity_type)
                    & (EntityRevision.entity_id == latest.c.entity_id)
                    & (EntityRevision.revision_id == latest.c.latest_id),
                )
                .where(
                    EntityRevision.change_kind == ChangeKind.DELETE,
                    EntityRevision.revision_id <= deleted_at_or_before,
                )
            )
            identities = db.execute(stmt).all()

            removed = 0
            for entity_type, key in identities:
                result = db.execute(
                    delete(EntityRevision)
                    .where(EntityRevision.entity_type == entity_type, EntityRevision.entity_id == key)
                    .execution_options(synchronize_session=False)
                )
                removed += result.rowcount

            orphaned = (
                select(EntityRevision.id)
                .where(EntityRevision.revision_id == RevisionInfo.id)
                .correlate(RevisionInfo)
                .exists()
            )
            db.execute(
                delete(RevisionInfo).where(~orphaned).execution_options(synchronize_session=False)
            )

        logger.info(
            "Deleted histories purged",
            extra={"identities": len(identities), "rows": removed, "cutoff": deleted_at_or_before},
        )
        return removed

    def _open_revision(self, db: Session, *, actor: str, timestamp: datetime) -> _OpenRevision:
        current = db.info.get(_OPEN_REVISION_KEY)
        if current is not None and current.transaction is db.get_transaction():
            return current

        revision_id = self._next_revision_id(db)
        info = RevisionInfo(id=revision_id, actor=actor, timestamp=ensure_utc(timestamp))
        db.add(info)
        db.flush()
        opened = _OpenRevision(transaction=db.get_transaction(), info=info)
        db.info[_OPEN_REVISION_KEY] = opened
        return opened

    def _next_revision_id(self, db: Session) -> int:
        # The UPDATE takes the row lock (or SQLite's write lock) until commit.
        result = db.execute(
            update(RevisionCounter)
            .where(RevisionCounter.name == GLOBAL_COUNTER)
            .values(value=RevisionCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.add(RevisionCounter(name=GLOBAL_COUNTER, value=1))
            db.flush()
            return 1
        return db.execute(
            select(RevisionCounter.value).where(RevisionCounter.name == GLOBAL_COUNTER)
        ).scalar_one()

    def _check_sequence(self, db: Session, entity_type: str, key: str, change_kind: ChangeKind) -> None:
        latest = db.execute(
            select(EntityRevision.change_kind)
            .where(EntityRevision.entity_type == entity_type, EntityRevision.entity_id == key)
            .order_by(EntityRevision.revision_id.desc())
            .limit(1)
        ).scalar_one_or_none()

        if change_kind is ChangeKind.INSERT:
            if latest is None:
                return
            if latest is ChangeKind.DELETE and self.key_reuse == KEY_REUSE_RESTART:
                return
            raise InvalidRevisionSequenceError(
                "INSERT is only allowed as the first revision of an identity.",
                entity_type=entity_type,
                entity_id=key,
                latest=latest.value,
            )

        if latest is None:
            raise InvalidRevisionSequenceError(
                f"{change_kind.value} requires a prior INSERT.",
                entity_type=entity_type,
                entity_id=key,
            )
        if latest is ChangeKind.DELETE:
            raise InvalidRevisionSequenceError(
                f"{change_kind.value} after DELETE.",
                entity_type=entity_type,
                entity_id=key,
            )


def list_revisions(db: Session, entity_type: str, entity_id: Any) -> list[RevisionRead]:
    """Return every revision of an identity in ascending revision order."""

    stmt = identity_select(entity_type, entity_id).order_by(EntityRevision.revision_id.asc())
    return [to_revision_read(entity_revision, info) for entity_revision, info in db.execute(stmt).all()]


def get_revision(db: Session, entity_type: str, entity_id: Any, revision_id: int) -> RevisionRead:
    """Return the snapshot of an identity recorded at exactly ``revision_id``."""

    row = db.execute(
        identity_select(entity_type, entity_id).where(EntityRevision.revision_id == revision_id)
    ).one_or_none()
    if row is None:
        raise NotFoundError(
            "Revision not found.",
            entity_type=entity_type,
            entity_id=entity_key(entity_id),
            revision_id=revision_id,
        )
    return to_revision_read(*row)


def latest_revision_id(db: Session) -> int | None:
    """Return the highest committed revision id across all entities."""

    return db.execute(select(func.max(RevisionInfo.id))).scalar_one()


def get_revision_info(db: Session, revision_id: int) -> RevisionInfoRead:
    info = db.get(RevisionInfo, revision_id)
    if info is None:
        raise NotFoundError("Revision not found.", revision_id=revision_id)
    return RevisionInfoRead(revision_id=info.id, actor=info.actor, timestamp=ensure_utc(info.timestamp))


def changes_at(db: Session, revision_id: int) -> list[RevisionRead]:
    """Return every entity snapshot recorded in one global revision."""

    stmt = (
        revision_select()
        .where(EntityRevision.revision_id == revision_id)
        .order_by(EntityRevision.entity_type, EntityRevision.entity_id)
    )
    return [to_revision_read(entity_revision, info) for entity_revision, info in db.execute(stmt).all()]


__all__ = [
    "RevisionStore",
    "changes_at",
    "entity_key",
    "get_revision",
    "get_revision_info",
    "identity_select",
    "latest_revision_id",
    "list_revisions",
    "revision_select",
    "to_revision_read",
    "translate_storage_error",
]
