"""ORM models package."""
from .base import AUDIT_FIELDS, AuditFieldsMixin, Base
from .revision import GLOBAL_COUNTER, ChangeKind, EntityRevision, RevisionCounter, RevisionInfo
from .user import User

__all__ = [
    "AUDIT_FIELDS",
    "AuditFieldsMixin",
    "Base",
    "ChangeKind",
    "EntityRevision",
    "GLOBAL_COUNTER",
    "RevisionCounter",
    "RevisionInfo",
    "User",
]
