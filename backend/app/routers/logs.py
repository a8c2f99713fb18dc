"""Audit log read API: filtered listing, per-task history and statistics."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import ValidationError

from app.models.audit import AuditLogEntry
from app.models.audit_query import LogPage, LogQuery, SortField, SortOrder
from app.services.audit_query_service import AuditQueryService, LogNotFoundError

router = APIRouter(tags=["logs"])


def _query_service(request: Request) -> AuditQueryService:
    return request.app.state.audit.query


def _build_query(**params) -> LogQuery:
    try:
        return LogQuery(**params)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())) or "query", "message": err.get("msg", "Invalid value.")}
            for err in exc.errors()
        ]
        raise HTTPException(status_code=422, detail={"detail": "Validation error.", "errors": errors})


@router.get("/api/logs", response_model=LogPage)
async def list_logs(
    request: Request,
    entity_id: int | None = Query(None, ge=1),
    action: list[str] | None = Query(None, description="One or more actions; repeat or comma-separate"),
    actor_id: int | None = Query(None, ge=1),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    sort_by: SortField = Query("created_at"),
    sort_order: SortOrder = Query("desc"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Audit events matching the filters. ``degraded`` marks fallback-only results."""
    actions = [part for value in action or [] for part in value.split(",") if part.strip()]
    query = _build_query(
        entity_id=entity_id,
        action=actions or None,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    return await _query_service(request).find_with_filters(query)


@router.get("/api/logs/statistics")
async def log_statistics(
    request: Request,
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
):
    return await _query_service(request).get_statistics(date_from, date_to)


@router.get("/api/logs/deletions/statistics")
async def deletion_statistics(
    request: Request,
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
):
    return await _query_service(request).get_deletion_statistics(date_from, date_to)


@router.get("/api/tasks/{task_id}/logs", response_model=LogPage)
async def task_logs(request: Request, task_id: int, limit: int = Query(50, ge=1, le=1000)):
    return await _query_service(request).find_by_entity(task_id, limit)


@router.get("/api/tasks/{task_id}/logs/deletions", response_model=LogPage)
async def task_deletion_logs(request: Request, task_id: int, limit: int = Query(50, ge=1, le=1000)):
    return await _query_service(request).find_deletion_history(task_id, limit)


@router.get("/health/databases")
async def database_health(request: Request):
    """Health of every audit store (primary and relational fallback)."""
    return await request.app.state.audit.health.get_health_summary()


# Declared after the static /api/logs/* routes so they keep precedence.
@router.get("/api/logs/{log_id}", response_model=AuditLogEntry)
async def get_log(request: Request, log_id: str):
    """One log by id: a primary ObjectId or a ``fallback_<n>`` row id."""
    try:
        return await _query_service(request).find_by_id(log_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LogNotFoundError:
        raise HTTPException(status_code=404, detail="Log not found")
