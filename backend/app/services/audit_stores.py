"""
backend/app/services/audit_stores.py

Purpose:
    Store adapters for the audit path. Each store kind implements the same two
    calls (``ping`` for health checks, ``insert`` for writes) and is selected
    once at construction instead of switching on a store-type string.

Dependencies:
    - motor.motor_asyncio
    - sqlalchemy.ext.asyncio
    - app.models.audit
    - app.models.fallback
"""

from __future__ import annotations

from typing import Any, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit import AuditEvent
from app.models.fallback import FallbackRecord
from app.utils import dumps_json, utcnow

MONGO_STORE = "mongodb"
RELATIONAL_STORE = "relational"


class AuditStore(Protocol):
    name: str

    async def ping(self) -> dict[str, Any]:
        """Trivial round trip. Raises on failure; returns driver details on success."""
        ...

    async def insert(self, event: AuditEvent, *, original_error: str | None = None) -> str:
        """Persist one event and return its store-assigned id."""
        ...


class MongoAuditStore:
    """Primary store: one document per event in the task_logs collection."""

    name = MONGO_STORE

    def __init__(self, database: AsyncIOMotorDatabase, collection: str = "task_logs"):
        self._db = database
        self._collection_name = collection

    @property
    def collection(self):
        return self._db[self._collection_name]

    async def ping(self) -> dict[str, Any]:
        result = await self._db.command("ping")
        if result.get("ok") != 1.0:
            raise ConnectionError(f"MongoDB ping returned {result!r}")
        return {"database": self._db.name}

    async def insert(self, event: AuditEvent, *, original_error: str | None = None) -> str:
        result = await self.collection.insert_one(event.to_primary_document())
        return str(result.inserted_id)


class RelationalAuditStore:
    """Relational fallback store backed by the task_logs_fallback table."""

    name = RELATIONAL_STORE

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def ping(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            if result.scalar() != 1:
                raise ConnectionError("Relational ping returned an unexpected result")
        return {}

    async def insert(self, event: AuditEvent, *, original_error: str | None = None) -> str:
        ctx = event.request_context
        record = FallbackRecord(
            entity_id=event.entity_id,
            action=event.action.value,
            actor_id=event.actor_id,
            payload=dumps_json(event.payload()),
            description=event.description,
            ip_address=ctx.ip,
            user_agent=ctx.user_agent,
            request_id=ctx.request_id,
            method=ctx.method,
            url=ctx.url,
            original_error=original_error,
            created_at=event.occurred_at,
            updated_at=utcnow(),
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(record)
                await session.flush()
                record_id = record.id
        return str(record_id)
