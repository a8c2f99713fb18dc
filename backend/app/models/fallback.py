"""Relational fallback table for audit events the primary store could not accept.

Rows are append-only; duplicates from ambiguous retries are tolerated, so the
only unique key is the surrogate primary key.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class FallbackRecord(Base):
    __tablename__ = "task_logs_fallback"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # JSON text: old_state, new_state, metadata, actor_name, occurred_at
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Request context
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    original_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_task_logs_fallback_entity_id", "entity_id"),
        Index("ix_task_logs_fallback_action", "action"),
        Index("ix_task_logs_fallback_created_at", "created_at"),
        Index("ix_task_logs_fallback_entity_created", "entity_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FallbackRecord(id={self.id}, entity_id={self.entity_id}, "
            f"action={self.action})>"
        )
