"""Task audit logging for the domain layer.

Every task lifecycle operation calls into TaskAuditService after its own
mutation has completed. Audit logging must never crash the request: any
residual exception degrades to a warning and the caller gets ``None``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import AuditSettings
from app.models.audit import Actor, AuditAction, AuditEvent, WriteOutcome
from app.services import audit_event_builder as builder
from app.services.audit_query_service import AuditQueryService
from app.services.audit_sinks import FileSink, ProcessErrorSink, RelationalFallbackSink
from app.services.audit_stores import MongoAuditStore, RelationalAuditStore
from app.services.audit_writer import RetryingWriter
from app.services.connection_health import ConnectionHealthChecker
from app.services.fallback_chain import FallbackChain

logger = logging.getLogger("taskaudit.audit")


class TaskAuditService:
    def __init__(self, writer: RetryingWriter):
        self._writer = writer

    async def record(self, event: AuditEvent) -> Optional[WriteOutcome]:
        """Write a prebuilt event in isolation from the caller."""
        try:
            outcome = await self._writer.write(event)
        except Exception:
            logger.warning(
                "Audit write raised: entity_id=%s action=%s",
                event.entity_id, event.action.value, exc_info=True,
            )
            return None
        if outcome.terminal_failure:
            logger.warning(
                "Audit trail missing for entity_id=%s action=%s: %s",
                event.entity_id, event.action.value, outcome.last_error,
            )
        return outcome

    async def log_task_activity(
        self,
        *,
        task_id: int,
        action: AuditAction | str,
        old_state: Optional[Mapping[str, Any]] = None,
        new_state: Optional[Mapping[str, Any]] = None,
        actor: Optional[Actor] = None,
        request: Optional[Request] = None,
    ) -> Optional[WriteOutcome]:
        """Record a create/update style change.

        Args:
            task_id: The task that changed.
            action: One of created, updated, deleted, restored, force_deleted.
            old_state: Task fields before the change (empty for creates).
            new_state: Task fields after the change (empty for destructive deletes).
            actor: Who performed the change, if known.
            request: Current HTTP request for ip/user agent/request id capture.
        """
        try:
            event = builder.build_from_activity(
                task_id,
                action,
                old_state,
                new_state,
                actor=actor,
                request_context=builder.request_context_from_request(request),
            )
        except Exception:
            logger.warning("Could not build audit event: task_id=%s action=%s", task_id, action, exc_info=True)
            return None
        return await self.record(event)

    async def log_deletion(
        self,
        *,
        task_id: int,
        deletion_type: str,
        task_state: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
        actor: Optional[Actor] = None,
        request: Optional[Request] = None,
    ) -> Optional[WriteOutcome]:
        """Record a soft delete, force delete or restore."""
        try:
            event = builder.build_from_deletion(
                task_id,
                deletion_type,
                task_state,
                context=context,
                actor=actor,
                request_context=builder.request_context_from_request(request),
            )
        except Exception:
            logger.warning(
                "Could not build deletion audit event: task_id=%s type=%s",
                task_id, deletion_type, exc_info=True,
            )
            return None
        return await self.record(event)


@dataclass
class AuditComponents:
    health: ConnectionHealthChecker
    writer: RetryingWriter
    query: AuditQueryService
    service: TaskAuditService

    def reload(self, config: AuditSettings) -> None:
        self.writer.reload(config)
        self.query.reload(config)


def build_audit_components(
    mongo_db: AsyncIOMotorDatabase,
    session_factory: async_sessionmaker[AsyncSession],
    config: AuditSettings,
) -> AuditComponents:
    """Wire stores, health checker, sinks, writer and query service from one config value."""
    primary = MongoAuditStore(mongo_db, config.primary_collection)
    relational = RelationalAuditStore(session_factory)
    health = ConnectionHealthChecker({primary.name: primary, relational.name: relational}, config)
    chain = FallbackChain(
        [
            RelationalFallbackSink(relational),
            FileSink(config.fallback_log_dir),
            ProcessErrorSink(),
        ],
        config,
    )
    writer = RetryingWriter(primary, health, chain, config)
    query = AuditQueryService(primary, session_factory, health, config)
    return AuditComponents(
        health=health,
        writer=writer,
        query=query,
        service=TaskAuditService(writer),
    )
