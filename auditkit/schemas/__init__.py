"""Schema package exports."""
from .revision import FieldChange, RevisionDiff, RevisionInfoRead, RevisionRead
from .user import UserCreate, UserRead, UserUpdate

__all__ = [
    "FieldChange",
    "RevisionDiff",
    "RevisionInfoRead",
    "RevisionRead",
    "UserCreate",
    "UserRead",
    "UserUpdate",
]
