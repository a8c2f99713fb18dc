"""
backend/app/models/audit_query.py

Purpose:
    Strict request/response schemas for audit log reads. The sort field is
    restricted to an explicit whitelist and the page size is capped at 1000.

Dependencies:
    - pydantic
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.audit import AuditAction, AuditLogEntry, SinkName
from app.utils import ensure_utc

SortField = Literal["created_at", "action", "entity_id", "actor_id"]
SortOrder = Literal["asc", "desc"]

SORTABLE_FIELDS: tuple[str, ...] = ("created_at", "action", "entity_id", "actor_id")
MAX_PAGE_SIZE = 1000


class LogQuery(BaseModel):
    entity_id: int | None = None
    actions: list[AuditAction] | None = Field(default=None, alias="action")
    actor_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    sort_by: SortField = "created_at"
    sort_order: SortOrder = "desc"
    limit: int = Field(default=50, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(default=0, ge=0)

    model_config = {"populate_by_name": True}

    @field_validator("actions", mode="before")
    @classmethod
    def _scalar_action(cls, value: Any) -> Any:
        # Accept "deleted", "deleted,restored" or ["deleted", "restored"].
        if value is None or value == "" or value == []:
            return None
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, AuditAction):
            return [value]
        return value

    @field_validator("date_from", "date_to")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_range(self) -> "LogQuery":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def applied_filters(self) -> dict[str, Any]:
        filters = {
            "entity_id": self.entity_id,
            "action": [a.value for a in self.actions] if self.actions else None,
            "actor_id": self.actor_id,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }
        return {k: v for k, v in filters.items() if v is not None}


class LogPage(BaseModel):
    entries: list[AuditLogEntry] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False
    filters: dict[str, Any] = Field(default_factory=dict)
    source: SinkName = SinkName.PRIMARY
    degraded: bool = False
    notice: str | None = None
