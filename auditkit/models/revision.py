"""Revision history models."""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

GLOBAL_COUNTER = "global"


class ChangeKind(str, PyEnum):
    """Kind of mutation captured by a revision."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RevisionCounter(Base):
    """Single-row counter handing out revision ids in commit order."""

    __tablename__ = "revision_counter"

    name: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    value: Mapped[int] = mapped_column(nullable=False, default=0)


class RevisionInfo(Base):
    """Global revision metadata: one row per committed unit of work."""

    __tablename__ = "revision_info"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    changes = relationship("EntityRevision", back_populates="revision", cascade="all, delete-orphan")


class EntityRevision(Base):
    """Snapshot of one entity's full field state at one revision."""

    __tablename__ = "entity_revisions"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "revision_id", name="uq_entity_revision"),
        Index("ix_entity_revisions_identity", "entity_type", "entity_id", "revision_id"),
    )

    revision_id: Mapped[int] = mapped_column(ForeignKey("revision_info.id"), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    change_kind: Mapped[ChangeKind] = mapped_column(SqlEnum(ChangeKind), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    revision = relationship("RevisionInfo", back_populates="changes")

    def __repr__(self) -> str:
        return (
            f"<EntityRevision(revision_id={self.revision_id}, entity_type={self.entity_type}, "
            f"entity_id={self.entity_id}, change_kind={self.change_kind})>"
        )
