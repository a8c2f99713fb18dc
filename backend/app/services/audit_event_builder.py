"""
backend/app/services/audit_event_builder.py

Purpose:
    Pure construction of immutable AuditEvent values from before/after task
    state. Computes the field-level diff, significant-change flags and the
    deletion/retention metadata. No I/O.

Dependencies:
    - fastapi.Request (request context extraction only)
    - app.models.audit
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Literal, Mapping, Optional

from fastapi import Request

from app.models.audit import Actor, AuditAction, AuditEvent, RequestContext
from app.utils import MAX_IP_LENGTH, ensure_utc, resolve_request_id, utcnow

DeletionType = Literal["soft", "force", "restore"]

# Fields whose change marks an update as significant for reviewers.
SIGNIFICANT_FIELDS: tuple[str, ...] = ("status", "priority", "due_date", "title")

HIGH_PRIORITIES = {"high", "urgent"}

SOFT_DELETE_RETENTION_DAYS = 30

_DELETION_ACTIONS: dict[str, AuditAction] = {
    "soft": AuditAction.DELETED,
    "force": AuditAction.FORCE_DELETED,
    "restore": AuditAction.RESTORED,
}


def _get_client_ip(request: Optional[Request]) -> str | None:
    """Extract client IP from request, preferring X-Forwarded-For (behind nginx)."""
    if request is None:
        return None

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Take the first IP (original client)
        return forwarded.split(",")[0].strip()[:MAX_IP_LENGTH] or None

    if request.client:
        return request.client.host

    return None


def request_context_from_request(request: Optional[Request]) -> RequestContext:
    """Capture ip, user agent, request id, method and url from the current request."""
    if request is None:
        return RequestContext()

    request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
    return RequestContext(
        ip=_get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=resolve_request_id(request_id),
        method=request.method,
        url=str(request.url),
    )


def compute_changes(
    old_state: Mapping[str, Any], new_state: Mapping[str, Any]
) -> dict[str, dict[str, Any]]:
    """Field-level diff: ``{field: {"from": old, "to": new}}`` for added, changed and removed keys."""
    changes: dict[str, dict[str, Any]] = {}
    for key, new_value in new_state.items():
        if key not in old_state or old_state[key] != new_value:
            changes[key] = {"from": old_state.get(key), "to": new_value}
    for key, old_value in old_state.items():
        if key not in new_state:
            changes[key] = {"from": old_value, "to": None}
    return changes


def significant_change_flags(changes: Mapping[str, Any]) -> dict[str, bool]:
    flags = {f"{field}_changed": field in changes for field in SIGNIFICANT_FIELDS}
    flags["is_significant"] = any(flags.values())
    return flags


def _action_label(action: AuditAction) -> str:
    return action.value.replace("_", " ").capitalize()


def describe_activity(action: AuditAction, changes: Mapping[str, Any]) -> str:
    if not changes:
        return f"{_action_label(action)} task with no changes"
    noun = "field" if len(changes) == 1 else "fields"
    return f"{_action_label(action)} task - modified {noun}: {', '.join(changes)}"


def build_from_activity(
    entity_id: int,
    action: AuditAction | str,
    old_state: Mapping[str, Any] | None = None,
    new_state: Mapping[str, Any] | None = None,
    actor: Actor | None = None,
    request_context: RequestContext | None = None,
) -> AuditEvent:
    """Build the event for a create/update (or any lifecycle action) from before/after state."""
    action = AuditAction(action)
    old = copy.deepcopy(dict(old_state or {}))
    new = copy.deepcopy(dict(new_state or {}))
    changes = compute_changes(old, new)
    actor = actor or Actor()

    return AuditEvent(
        entity_id=entity_id,
        action=action,
        old_state=old,
        new_state=new,
        actor_id=actor.id,
        actor_name=actor.name,
        description=describe_activity(action, changes),
        request_context=request_context or RequestContext(),
        metadata={
            "changes": changes,
            "change_count": len(changes),
            "changed_fields": list(changes),
            "significant_changes": significant_change_flags(changes),
        },
    )


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value:
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _deletion_defaults(deletion_type: str, entity_id: int, now: datetime) -> dict[str, Any]:
    if deletion_type == "soft":
        return {
            "recovery_available": True,
            "retention_days": SOFT_DELETE_RETENTION_DAYS,
            "restore_endpoint": f"/tasks/{entity_id}/restore",
        }
    if deletion_type == "force":
        return {
            "recovery_available": False,
            "confirmation_required": True,
            "audit_level": "high",
            "data_retention": "none",
        }
    return {
        "recovered_from": "trash",
        "data_integrity": "preserved",
        "restored_at": now.isoformat(),
    }


def build_from_deletion(
    entity_id: int,
    deletion_type: DeletionType,
    entity_state: Mapping[str, Any],
    context: Mapping[str, Any] | None = None,
    actor: Actor | None = None,
    request_context: RequestContext | None = None,
) -> AuditEvent:
    """Build the event for a soft delete, force delete or restore.

    Soft deletes are recoverable with a 30-day retention hint; force deletes are
    irreversible and flagged for high-level audit. Raises ValueError for an
    unknown ``deletion_type``.
    """
    if deletion_type not in _DELETION_ACTIONS:
        raise ValueError(f"Invalid deletion type: {deletion_type}")

    action = _DELETION_ACTIONS[deletion_type]
    state = copy.deepcopy(dict(entity_state))
    now = utcnow()
    actor = actor or Actor()

    title = state.get("title") or f"Task #{entity_id}"
    description = {
        "soft": f"Task '{title}' was moved to trash",
        "force": f"Task '{title}' was permanently deleted",
        "restore": f"Task '{title}' was restored from trash",
    }[deletion_type]

    created_at = _parse_datetime(state.get("created_at"))
    due_date = _parse_datetime(state.get("due_date"))
    priority = state.get("priority") or "medium"

    merged_context = _deletion_defaults(deletion_type, entity_id, now)
    merged_context.update(copy.deepcopy(dict(context or {})))

    metadata = {
        "deletion_operation": {
            "type": deletion_type,
            "is_permanent": deletion_type == "force",
            "is_reversible": deletion_type in ("soft", "restore"),
            "performed_at": now.isoformat(),
        },
        "context": merged_context,
        "task_metadata": {
            "task_age_days": (now - created_at).days if created_at else None,
            "was_overdue": bool(due_date and due_date < now),
            "priority_level": priority,
            "completion_status": state.get("status") or "unknown",
        },
        "security_info": {
            "requires_audit": deletion_type == "force" or priority in HIGH_PRIORITIES,
            "retention_policy": f"{SOFT_DELETE_RETENTION_DAYS}_days" if deletion_type == "soft" else "permanent",
        },
    }

    # Restores bring the task back: the state is the new state.
    old_state, new_state = ({}, state) if deletion_type == "restore" else (state, {})

    return AuditEvent(
        entity_id=entity_id,
        action=action,
        old_state=old_state,
        new_state=new_state,
        actor_id=actor.id,
        actor_name=actor.name,
        description=description,
        occurred_at=now,
        request_context=request_context or RequestContext(),
        metadata=metadata,
    )
