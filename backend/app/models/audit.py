"""
backend/app/models/audit.py

Purpose:
    Audit event contracts for the task audit write path. AuditEvent is the
    immutable record of one task state change; WriteOutcome reports which sink
    accepted it. Both are insert-only values and are never mutated.

Dependencies:
    - pydantic
    - app.utils
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils import ensure_utc, utcnow


def _read_only(self, *args, **kwargs):
    raise TypeError(f"{type(self).__name__} is read-only")


class FrozenDict(dict):
    """dict that refuses mutation once built. Copies come back as plain dicts."""

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __deepcopy__(self, memo):
        return thaw(self)

    def __reduce__(self):
        return (dict, (thaw(self),))


class FrozenList(list):
    __setitem__ = __delitem__ = __iadd__ = __imul__ = _read_only
    append = extend = insert = remove = pop = clear = sort = reverse = _read_only

    def __deepcopy__(self, memo):
        return thaw(self)

    def __reduce__(self):
        return (list, (thaw(self),))


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into their read-only counterparts."""
    if isinstance(value, dict):
        return FrozenDict((key, freeze(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return FrozenList(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Mutable deep copy of a frozen structure (for drivers and serializers)."""
    if isinstance(value, dict):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, list):
        return [thaw(item) for item in value]
    return value


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESTORED = "restored"
    FORCE_DELETED = "force_deleted"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


DELETION_ACTIONS: tuple[AuditAction, ...] = (
    AuditAction.DELETED,
    AuditAction.FORCE_DELETED,
    AuditAction.RESTORED,
)


class SinkName(str, Enum):
    PRIMARY = "primary"
    FALLBACK_RELATIONAL = "fallback_relational"
    FALLBACK_FILE = "fallback_file"
    FALLBACK_ERRORLOG = "fallback_errorlog"


class RequestContext(BaseModel):
    """HTTP request details captured at the moment of the domain mutation."""

    model_config = ConfigDict(frozen=True)

    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    method: str | None = None
    url: str | None = None


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    name: str | None = None


class AuditEvent(BaseModel):
    """Immutable audit record of one task lifecycle operation.

    Exactly one of old_state/new_state is empty for a create, restore or
    destructive delete; both are populated for an update.
    """

    model_config = ConfigDict(frozen=True, validate_default=True)

    entity_id: int
    action: AuditAction
    old_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)
    actor_id: int | None = None
    actor_name: str | None = None
    description: str = ""
    occurred_at: datetime = Field(default_factory=utcnow)
    request_context: RequestContext = Field(default_factory=RequestContext)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("old_state", "new_state", "metadata")
    @classmethod
    def _freeze_state(cls, value: dict[str, Any]) -> dict[str, Any]:
        return freeze(value)

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_primary_document(self) -> dict[str, Any]:
        """Shape stored in the task_logs collection (``_id`` assigned by Mongo)."""
        return {
            "entity_id": self.entity_id,
            "action": self.action.value,
            "old_data": thaw(self.old_state),
            "new_data": thaw(self.new_state),
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "description": self.description,
            "created_at": self.occurred_at,
            "updated_at": self.occurred_at,
            "metadata": thaw(self.metadata),
            "request_context": self.request_context.model_dump(),
        }

    def payload(self) -> dict[str, Any]:
        """State bundle serialized into fallback sinks."""
        return {
            "old_state": thaw(self.old_state),
            "new_state": thaw(self.new_state),
            "metadata": thaw(self.metadata),
            "actor_name": self.actor_name,
            "occurred_at": self.occurred_at,
        }


class WriteOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    sink: SinkName
    attempts: int = Field(ge=1)
    accepted_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
    terminal_failure: bool = False

    @property
    def used_fallback(self) -> bool:
        return self.sink is not SinkName.PRIMARY


class HealthStatus(BaseModel):
    store: str
    status: str  # "healthy" | "failed"
    response_time_ms: float
    error: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"


class AuditLogEntry(BaseModel):
    """Read-side view of a persisted event, from either the primary or the fallback table."""

    id: str
    entity_id: int
    action: str
    old_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)
    actor_id: int | None = None
    actor_name: str | None = None
    description: str | None = None
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    request_context: dict[str, Any] = Field(default_factory=dict)
    original_error: str | None = None
    source: SinkName = SinkName.PRIMARY
