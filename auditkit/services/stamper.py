"""Audit field stamping for inserts and updates."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from auditkit.models.base import AUDIT_FIELDS
from auditkit.models.revision import ChangeKind
from auditkit.services.providers import ActorProvider
from auditkit.utils.errors import MissingActorError
from auditkit.utils.time import ensure_utc, parse_iso_utc


def resolve_actor(actor: str | None, provider: ActorProvider | None = None) -> str:
    """Return the explicit actor, else the provider's, else raise ``MissingActorError``."""

    candidate = actor
    if candidate is None and provider is not None:
        candidate = provider.current_actor()
    if candidate is None or not str(candidate).strip():
        raise MissingActorError("No actor could be resolved for this write.")
    return str(candidate).strip()


def stamp(
    fields: Mapping[str, Any],
    operation: ChangeKind,
    actor: str | None,
    now: datetime,
    *,
    prior: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Return ``fields`` with the audit fields set for ``operation``.

    Audit fields supplied in ``fields`` are discarded. On UPDATE the creation
    stamps are copied from ``prior`` (the persisted state) and the
    modification time never precedes the creation time.
    """

    if actor is None or not str(actor).strip():
        raise MissingActorError("No actor could be resolved for this write.")
    actor = str(actor).strip()
    now = ensure_utc(now)

    stamped = {key: value for key, value in fields.items() if key not in AUDIT_FIELDS}

    if operation is ChangeKind.INSERT:
        stamped.update(created_at=now, created_by=actor, modified_at=now, modified_by=actor)
        return stamped

    if operation is ChangeKind.UPDATE:
        if prior is None or prior.get("created_at") is None or prior.get("created_by") is None:
            raise ValueError("UPDATE stamping requires the persisted creation stamps.")
        created_at = prior["created_at"]
        if isinstance(created_at, str):
            created_at = parse_iso_utc(created_at)
        created_at = ensure_utc(created_at)
        stamped.update(
            created_at=created_at,
            created_by=prior["created_by"],
            modified_at=max(now, created_at),
            modified_by=actor,
        )
        return stamped

    raise ValueError(f"{operation.value} does not stamp audit fields.")


__all__ = ["resolve_actor", "stamp"]
