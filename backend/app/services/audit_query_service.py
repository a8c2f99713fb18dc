"""
backend/app/services/audit_query_service.py

Purpose:
    Read side of the audit trail: filtered/paginated listing, per-task history
    and aggregate statistics against the primary store. When the primary is
    unreachable the same filters run against the relational fallback table and
    the result is flagged as degraded (fallback-persisted events only).

Dependencies:
    - motor (via MongoAuditStore)
    - sqlalchemy
    - app.models.audit_query
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from bson import ObjectId
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import AuditSettings
from app.models.audit import DELETION_ACTIONS, AuditAction, AuditLogEntry, SinkName
from app.models.audit_query import LogPage, LogQuery
from app.models.fallback import FallbackRecord
from app.services.audit_errors import ConnectivityError, classify_store_error
from app.services.audit_stores import MongoAuditStore
from app.services.connection_health import ConnectionHealthChecker
from app.utils import ensure_utc, utcnow

logger = logging.getLogger("taskaudit.query")

DEGRADED_NOTICE = (
    "Primary audit store unavailable: results reflect only events persisted to the "
    "relational fallback table and may be incomplete."
)

RECENT_ACTIVITY_HOURS = 24

FALLBACK_ID_PREFIX = "fallback_"


class LogNotFoundError(LookupError):
    """No audit log with the requested id."""


async def _gather_all(*aws):
    """Like asyncio.gather, but every arm settles before the first error is raised."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


# ---------------------------------------------------------------------------
# Filter construction
# ---------------------------------------------------------------------------

def build_mongo_filter(query: LogQuery) -> dict[str, Any]:
    criteria: dict[str, Any] = {}
    if query.entity_id is not None:
        criteria["entity_id"] = query.entity_id
    if query.actions:
        values = [a.value for a in query.actions]
        criteria["action"] = values[0] if len(values) == 1 else {"$in": values}
    if query.actor_id is not None:
        criteria["actor_id"] = query.actor_id
    created: dict[str, datetime] = {}
    if query.date_from:
        created["$gte"] = query.date_from
    if query.date_to:
        created["$lte"] = query.date_to
    if created:
        criteria["created_at"] = created
    return criteria


def _apply_sql_filters(stmt: Select, query: LogQuery) -> Select:
    if query.entity_id is not None:
        stmt = stmt.where(FallbackRecord.entity_id == query.entity_id)
    if query.actions:
        stmt = stmt.where(FallbackRecord.action.in_([a.value for a in query.actions]))
    if query.actor_id is not None:
        stmt = stmt.where(FallbackRecord.actor_id == query.actor_id)
    if query.date_from:
        stmt = stmt.where(FallbackRecord.created_at >= query.date_from)
    if query.date_to:
        stmt = stmt.where(FallbackRecord.created_at <= query.date_to)
    return stmt


def parse_log_id(log_id: str) -> ObjectId | int:
    """``fallback_<n>`` names a fallback-table row; anything else must be an ObjectId."""
    if log_id.startswith(FALLBACK_ID_PREFIX):
        suffix = log_id[len(FALLBACK_ID_PREFIX):]
        if suffix.isdigit():
            return int(suffix)
    elif ObjectId.is_valid(log_id):
        return ObjectId(log_id)
    raise ValueError(f"Invalid log ID format: {log_id}")


def _entry_from_document(doc: dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(doc.get("_id")),
        entity_id=doc["entity_id"],
        action=doc["action"],
        old_state=doc.get("old_data") or {},
        new_state=doc.get("new_data") or {},
        actor_id=doc.get("actor_id"),
        actor_name=doc.get("actor_name"),
        description=doc.get("description"),
        created_at=ensure_utc(doc["created_at"]),
        metadata=doc.get("metadata") or {},
        request_context=doc.get("request_context") or {},
        source=SinkName.PRIMARY,
    )


def _entry_from_record(record: FallbackRecord) -> AuditLogEntry:
    try:
        payload = json.loads(record.payload or "{}")
    except ValueError:
        payload = {}
    return AuditLogEntry(
        id=f"{FALLBACK_ID_PREFIX}{record.id}",
        entity_id=record.entity_id,
        action=record.action,
        old_state=payload.get("old_state") or {},
        new_state=payload.get("new_state") or {},
        actor_id=record.actor_id,
        actor_name=payload.get("actor_name"),
        description=record.description,
        created_at=ensure_utc(record.created_at),
        metadata=payload.get("metadata") or {},
        request_context={
            "ip": record.ip_address,
            "user_agent": record.user_agent,
            "request_id": record.request_id,
            "method": record.method,
            "url": record.url,
        },
        original_error=record.original_error,
        source=SinkName.FALLBACK_RELATIONAL,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuditQueryService:
    def __init__(
        self,
        primary: MongoAuditStore,
        fallback_sessions: async_sessionmaker[AsyncSession],
        health_checker: ConnectionHealthChecker,
        config: AuditSettings,
    ):
        self._primary = primary
        self._sessions = fallback_sessions
        self._health = health_checker
        self._config = config

    def reload(self, config: AuditSettings) -> None:
        self._config = config

    async def _primary_available(self) -> bool:
        status = await self._health.test_connection(self._primary.name)
        return status.is_healthy

    async def _run_with_degradation(self, primary_call, fallback_call, what: str):
        """Run ``primary_call``; on a connection-class failure run ``fallback_call``.

        Returns ``(result, degraded)``. Permanent primary errors propagate.
        """
        if await self._primary_available():
            try:
                return await primary_call(), False
            except Exception as exc:
                classified = classify_store_error(exc, store=self._primary.name)
                if not classified.retryable:
                    logger.error("Audit %s failed on primary: %s", what, classified)
                    raise classified from exc
                logger.warning("Audit %s hit a connection error, degrading: %s", what, classified)
        else:
            logger.warning("Primary audit store unreachable, serving %s from fallback table", what)

        try:
            return await fallback_call(), True
        except Exception as exc:
            logger.error("Degraded audit %s failed on fallback table: %s", what, exc)
            raise ConnectivityError(
                f"Audit {what} unavailable: primary and fallback stores both failed",
                store="fallback_relational",
                cause=exc,
            ) from exc

    # ---- listing ----

    async def _find_primary(self, query: LogQuery) -> tuple[list[AuditLogEntry], int]:
        collection = self._primary.collection
        criteria = build_mongo_filter(query)
        direction = 1 if query.sort_order == "asc" else -1
        cursor = (
            collection.find(criteria)
            .sort([(query.sort_by, direction), ("_id", direction)])
            .skip(query.offset)
            .limit(query.limit)
        )
        docs, total = await _gather_all(
            cursor.to_list(length=query.limit),
            collection.count_documents(criteria),
        )
        return [_entry_from_document(doc) for doc in docs], total

    async def _find_fallback(self, query: LogQuery) -> tuple[list[AuditLogEntry], int]:
        column = getattr(FallbackRecord, query.sort_by)
        order = column.asc() if query.sort_order == "asc" else column.desc()
        tiebreak = FallbackRecord.id.asc() if query.sort_order == "asc" else FallbackRecord.id.desc()
        data_stmt = (
            _apply_sql_filters(select(FallbackRecord), query)
            .order_by(order, tiebreak)
            .offset(query.offset)
            .limit(query.limit)
        )
        count_stmt = _apply_sql_filters(select(func.count()).select_from(FallbackRecord), query)
        async with self._sessions() as session:
            records = (await session.execute(data_stmt)).scalars().all()
            total = (await session.execute(count_stmt)).scalar_one()
        return [_entry_from_record(r) for r in records], int(total)

    async def find_with_filters(self, query: LogQuery) -> LogPage:
        if query.limit > self._config.query_max_limit:
            query = query.model_copy(update={"limit": self._config.query_max_limit})

        (entries, total), degraded = await self._run_with_degradation(
            lambda: self._find_primary(query),
            lambda: self._find_fallback(query),
            "query",
        )
        return LogPage(
            entries=entries,
            total=total,
            limit=query.limit,
            offset=query.offset,
            has_more=query.offset + len(entries) < total,
            filters=query.applied_filters(),
            source=SinkName.FALLBACK_RELATIONAL if degraded else SinkName.PRIMARY,
            degraded=degraded,
            notice=DEGRADED_NOTICE if degraded else None,
        )

    async def find_by_id(self, log_id: str) -> AuditLogEntry:
        """One log by id.

        ``fallback_<n>`` ids are read from the fallback table whatever the
        primary's state; ObjectIds need the primary. Raises ValueError for a
        malformed id and LogNotFoundError when nothing matches.
        """
        key = parse_log_id(log_id)
        if isinstance(key, int):
            try:
                async with self._sessions() as session:
                    record = await session.get(FallbackRecord, key)
            except Exception as exc:
                logger.error("Fallback lookup failed for %s: %s", log_id, exc)
                raise ConnectivityError(
                    f"Audit lookup unavailable: {exc}", store="fallback_relational", cause=exc,
                ) from exc
            entry = _entry_from_record(record) if record is not None else None
        else:
            if not await self._primary_available():
                raise ConnectivityError(
                    f"Log {log_id} lives in the primary audit store, which is unavailable",
                    store=self._primary.name,
                )
            try:
                doc = await self._primary.collection.find_one({"_id": key})
            except Exception as exc:
                raise classify_store_error(exc, store=self._primary.name) from exc
            entry = _entry_from_document(doc) if doc is not None else None

        if entry is None:
            raise LogNotFoundError(log_id)
        return entry

    async def find_by_entity(self, entity_id: int, limit: int = 50) -> LogPage:
        """Task history, newest first."""
        return await self.find_with_filters(LogQuery(entity_id=entity_id, limit=limit))

    async def find_deletion_history(self, entity_id: int, limit: int = 50) -> LogPage:
        return await self.find_with_filters(
            LogQuery(entity_id=entity_id, actions=list(DELETION_ACTIONS), limit=limit)
        )

    # ---- statistics ----

    def _window(self, date_from: datetime | None, date_to: datetime | None) -> tuple[datetime, datetime]:
        end = ensure_utc(date_to) if date_to else utcnow()
        start = ensure_utc(date_from) if date_from else end - timedelta(days=self._config.stats_default_days)
        if start > end:
            raise ValueError("date_from must not be after date_to")
        return start, end

    async def _stats_primary(self, start: datetime, end: datetime) -> dict[str, Any]:
        collection = self._primary.collection
        match = {"$match": {"created_at": {"$gte": start, "$lte": end}}}
        by_action, by_day, recent = await _gather_all(
            collection.aggregate([
                match,
                {"$group": {"_id": "$action", "count": {"$sum": 1}}},
            ]).to_list(length=None),
            collection.aggregate([
                match,
                {"$group": {
                    "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
                    "count": {"$sum": 1},
                }},
            ]).to_list(length=None),
            collection.count_documents({
                "created_at": {"$gte": max(start, end - timedelta(hours=RECENT_ACTIVITY_HOURS)), "$lte": end},
            }),
        )
        return {
            "counts_by_action": {row["_id"]: row["count"] for row in by_action},
            "daily_breakdown": {row["_id"]: row["count"] for row in by_day},
            "recent": recent,
        }

    async def _stats_fallback(self, start: datetime, end: datetime) -> dict[str, Any]:
        in_window = (FallbackRecord.created_at >= start, FallbackRecord.created_at <= end)
        day = func.date(FallbackRecord.created_at)
        recent_start = max(start, end - timedelta(hours=RECENT_ACTIVITY_HOURS))
        async with self._sessions() as session:
            by_action = (await session.execute(
                select(FallbackRecord.action, func.count()).where(*in_window).group_by(FallbackRecord.action)
            )).all()
            by_day = (await session.execute(
                select(day, func.count()).where(*in_window).group_by(day)
            )).all()
            recent = (await session.execute(
                select(func.count()).select_from(FallbackRecord).where(
                    FallbackRecord.created_at >= recent_start,
                    FallbackRecord.created_at <= end,
                )
            )).scalar_one()
        return {
            "counts_by_action": {action: count for action, count in by_action},
            "daily_breakdown": {str(d): count for d, count in by_day},
            "recent": int(recent),
        }

    async def get_statistics(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = self._window(date_from, date_to)
        raw, degraded = await self._run_with_degradation(
            lambda: self._stats_primary(start, end),
            lambda: self._stats_fallback(start, end),
            "statistics",
        )
        counts = {action: raw["counts_by_action"].get(action, 0) for action in AuditAction.values()}
        return {
            "counts_by_action": counts,
            "total": sum(counts.values()),
            "window": {
                "start": start.isoformat(),
                "end": end.isoformat(),
                "days": (end - start).days,
            },
            "recent_activity_window": {
                "hours": RECENT_ACTIVITY_HOURS,
                "count": raw["recent"],
            },
            "daily_breakdown": dict(sorted(raw["daily_breakdown"].items())),
            "source": (SinkName.FALLBACK_RELATIONAL if degraded else SinkName.PRIMARY).value,
            "degraded": degraded,
            "notice": DEGRADED_NOTICE if degraded else None,
        }

    async def get_deletion_statistics(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        stats = await self.get_statistics(date_from, date_to)
        counts = stats["counts_by_action"]
        soft = counts[AuditAction.DELETED.value]
        force = counts[AuditAction.FORCE_DELETED.value]
        restores = counts[AuditAction.RESTORED.value]
        return {
            "period": stats["window"],
            "deletion_counts": {
                "soft_deletes": soft,
                "force_deletes": force,
                "restores": restores,
                "total_deletions": soft + force + restores,
                "net_deletions": soft + force - restores,
            },
            # All actions per day; the counts above are the deletion-only view.
            "daily_breakdown": stats["daily_breakdown"],
            "source": stats["source"],
            "degraded": stats["degraded"],
        }
