"""User model."""
from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import AuditFieldsMixin, Base


class User(AuditFieldsMixin, Base):
    """Represents an audited application user."""

    __tablename__ = "users"
    # Deleted ids are never handed out again.
    __table_args__ = {"sqlite_autoincrement": True}

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"
