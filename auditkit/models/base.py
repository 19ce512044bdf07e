"""Declarative base model and audit field mixin for SQLAlchemy."""
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

AUDIT_FIELDS = ("created_at", "created_by", "modified_at", "modified_by")
VERSION_FIELD = "version_id"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)


class AuditFieldsMixin:
    """Creation and modification stamps maintained by the audit stamper.

    ``created_at``/``created_by`` are written once on insert;
    ``modified_at``/``modified_by`` are rewritten on every write.
    ``version_id`` is bumped by the ORM on every UPDATE and checked on every
    UPDATE/DELETE, so a write based on a row another connection changed
    fails with ``StaleDataError`` instead of overwriting it.
    """

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_by: Mapped[str] = mapped_column(String(100), nullable=False)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    @declared_attr.directive
    def __mapper_args__(cls) -> dict[str, Any]:
        return {"version_id_col": cls.version_id}
