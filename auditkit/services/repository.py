"""Entity repository: audited, revisioned create/update/delete."""
from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Mapping, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from auditkit.config import get_settings
from auditkit.models.base import AUDIT_FIELDS, VERSION_FIELD
from auditkit.models.revision import ChangeKind
from auditkit.services import revision_query
from auditkit.services.providers import ActorProvider, Clock, ContextActorProvider, SystemClock
from auditkit.services.revision_query import RevisionHistory
from auditkit.services.revisions import RevisionStore, entity_key
from auditkit.services.stamper import resolve_actor, stamp
from auditkit.utils.audit import entity_type_for, revisioned_columns, snapshot_entity
from auditkit.utils.errors import ConcurrentWriteConflict, InvalidRevisionSequenceError, NotFoundError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")
T = TypeVar("T")


def retry_on_conflict(operation: Callable[[], T], *, attempts: int | None = None) -> T:
    """Run ``operation``, re-running it whole after a ``ConcurrentWriteConflict``."""

    if attempts is None:
        attempts = get_settings().WRITE_RETRY_ATTEMPTS
    if attempts < 1:
        raise ValueError("attempts must be positive")
    attempt = 1
    while True:
        try:
            return operation()
        except ConcurrentWriteConflict:
            if attempt >= attempts:
                raise
            logger.warning("Retrying write after conflict", extra={"attempt": attempt, "max_attempts": attempts})
            attempt += 1


class EntityRepository(Generic[ModelT]):
    """Writes live rows of ``model`` together with their audit stamps and revisions.

    ``model`` must be a mapped class using ``AuditFieldsMixin`` with an ``id``
    primary key. Every write resolves the actor first (explicit argument,
    then the actor provider), then stamps, writes and records inside one
    unit of work of the revision store.
    """

    def __init__(
        self,
        db: Session,
        model: type[ModelT],
        *,
        store: RevisionStore | None = None,
        clock: Clock | None = None,
        actor_provider: ActorProvider | None = None,
    ) -> None:
        self.db = db
        self.model = model
        self.store = store or RevisionStore()
        self.clock = clock or SystemClock()
        self.actor_provider = actor_provider or ContextActorProvider()
        self.entity_type = entity_type_for(model)
        self._columns = set(revisioned_columns(model))

    def get(self, entity_id: Any) -> ModelT:
        obj = self.db.get(self.model, entity_id)
        if obj is None:
            raise NotFoundError(f"{self.entity_type} not found.", entity_type=self.entity_type, entity_id=entity_key(entity_id))
        return obj

    def create(self, entity: Mapping[str, Any] | BaseModel, actor: str | None = None) -> ModelT:
        """Insert a new live row and its INSERT revision."""

        actor = resolve_actor(actor, self.actor_provider)
        fields = self._writable_fields(entity, partial=False)

        with self.store.unit_of_work(self.db):
            explicit_id = fields.get("id")
            if explicit_id is not None and self.db.get(self.model, explicit_id) is not None:
                raise InvalidRevisionSequenceError(
                    f"{self.entity_type} already exists.",
                    entity_type=self.entity_type,
                    entity_id=entity_key(explicit_id),
                )
            now = self.clock.now()
            obj = self.model(**stamp(fields, ChangeKind.INSERT, actor, now))
            self.db.add(obj)
            self.db.flush()
            revision_id = self.store.record(
                self.db,
                entity_type=self.entity_type,
                entity_id=obj.id,
                change_kind=ChangeKind.INSERT,
                payload=snapshot_entity(obj),
                actor=actor,
                timestamp=now,
            )

        self._log_write(ChangeKind.INSERT, obj.id, revision_id, actor)
        return obj

    def update(self, entity_id: Any, patch: Mapping[str, Any] | BaseModel, actor: str | None = None) -> ModelT:
        """Apply ``patch`` to a live row and record an UPDATE revision."""

        actor = resolve_actor(actor, self.actor_provider)
        changes = self._writable_fields(patch, partial=True)

        with self.store.unit_of_work(self.db):
            obj = self._load_for_write(entity_id)
            now = self.clock.now()
            prior = {"created_at": obj.created_at, "created_by": obj.created_by}
            for key, value in stamp(changes, ChangeKind.UPDATE, actor, now, prior=prior).items():
                setattr(obj, key, value)
            self.db.flush()
            revision_id = self.store.record(
                self.db,
                entity_type=self.entity_type,
                entity_id=obj.id,
                change_kind=ChangeKind.UPDATE,
                payload=snapshot_entity(obj),
                actor=actor,
                timestamp=now,
            )

        self._log_write(ChangeKind.UPDATE, obj.id, revision_id, actor)
        return obj

    def delete(self, entity_id: Any, actor: str | None = None) -> int:
        """Remove a live row, keeping its last state as a DELETE revision.

        Returns the revision id of the deletion.
        """

        actor = resolve_actor(actor, self.actor_provider)

        with self.store.unit_of_work(self.db):
            obj = self._load_for_write(entity_id)
            now = self.clock.now()
            payload = snapshot_entity(obj)
            key = obj.id
            self.db.delete(obj)
            self.db.flush()
            revision_id = self.store.record(
                self.db,
                entity_type=self.entity_type,
                entity_id=key,
                change_kind=ChangeKind.DELETE,
                payload=payload,
                actor=actor,
                timestamp=now,
            )

        self._log_write(ChangeKind.DELETE, key, revision_id, actor)
        return revision_id

    def history(self, entity_id: Any, **bounds: Any) -> RevisionHistory:
        return revision_query.history(self.db, self.entity_type, entity_id, **bounds)

    def as_of(self, entity_id: Any, revision_id: int) -> dict[str, Any]:
        return revision_query.as_of(self.db, self.entity_type, entity_id, revision_id)

    def _load_for_write(self, entity_id: Any) -> ModelT:
        stmt = (
            select(self.model)
            .where(self.model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        obj = self.db.execute(stmt).scalar_one_or_none()
        if obj is None:
            raise NotFoundError(f"{self.entity_type} not found.", entity_type=self.entity_type, entity_id=entity_key(entity_id))
        return obj

    def _writable_fields(self, data: Mapping[str, Any] | BaseModel, *, partial: bool) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            fields = data.model_dump(exclude_unset=partial)
        else:
            fields = dict(data)

        managed = sorted(set(fields) & {*AUDIT_FIELDS, VERSION_FIELD})
        if managed:
            raise ValueError(f"Audit fields are stamped automatically: {', '.join(managed)}")
        if partial and "id" in fields:
            raise ValueError("The identity of an existing entity cannot be changed.")
        unknown = sorted(set(fields) - self._columns)
        if unknown:
            raise ValueError(f"Unknown {self.entity_type} fields: {', '.join(unknown)}")
        return fields

    def _log_write(self, change_kind: ChangeKind, entity_id: Any, revision_id: int, actor: str) -> None:
        logger.info(
            "Revision recorded",
            extra={
                "entity_type": self.entity_type,
                "entity_id": entity_key(entity_id),
                "revision_id": revision_id,
                "change_kind": change_kind.value,
                "actor": actor,
            },
        )


__all__ = ["EntityRepository", "retry_on_conflict"]
