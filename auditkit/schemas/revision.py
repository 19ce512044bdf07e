"""Revision schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from auditkit.models.revision import ChangeKind


class RevisionRead(BaseModel):
    revision_id: int
    entity_type: str
    entity_id: str
    change_kind: ChangeKind
    actor: str
    timestamp: datetime
    payload: dict[str, Any]

    model_config = ConfigDict(frozen=True)


class RevisionInfoRead(BaseModel):
    revision_id: int
    actor: str
    timestamp: datetime

    model_config = ConfigDict(frozen=True)


class FieldChange(BaseModel):
    old: Any = None
    new: Any = None


class RevisionDiff(BaseModel):
    entity_type: str
    entity_id: str
    revision_a: int
    revision_b: int
    changes: dict[str, FieldChange]

    @property
    def changed_fields(self) -> list[str]:
        return sorted(self.changes)
