"""SQLAlchemy model for durable memory entries.

Soft-delete only: is_active=False is a tombstone kept for audit and stats.
The embedding column is NULL until a vector has been computed; embedding_model
records which provider model produced it so vector spaces are never mixed.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, true
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.conversation.models import Base
from src.infra.timeutil import utcnow

_TagsType = JSON().with_variant(JSONB(), "postgresql")
_VectorType = JSON(none_as_null=True).with_variant(ARRAY(Float), "postgresql")


class MemoryEntryRecord(Base):
    __tablename__ = "memory_entries"
    __table_args__ = (
        Index("idx_memory_entries_session_active", "session_id", "is_active"),
        Index("idx_memory_entries_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(16))
    importance: Mapped[int] = mapped_column(Integer)
    tags: Mapped[list[str]] = mapped_column(_TagsType, default=list)
    embedding: Mapped[list[float] | None] = mapped_column(_VectorType, nullable=True)
    embedding_model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
