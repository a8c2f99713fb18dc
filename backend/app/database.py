"""
backend/app/database.py

Purpose:
    Connection bootstrap for the primary audit store (MongoDB) and the
    relational fallback store, plus index and table management.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - sqlalchemy.ext.asyncio
    - app.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings, settings
from app.models.fallback import Base

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None
engine: AsyncEngine = None
session_factory: async_sessionmaker[AsyncSession] = None

logger = logging.getLogger("taskaudit.database")


def create_sql_engine(cfg: Settings) -> AsyncEngine:
    kwargs = {"echo": cfg.DATABASE_ECHO, "pool_pre_ping": True}
    if not cfg.DATABASE_URL.startswith("sqlite"):
        kwargs["pool_size"] = cfg.DATABASE_POOL_SIZE
    return create_async_engine(cfg.DATABASE_URL, **kwargs)


async def connect_db(cfg: Settings = settings) -> None:
    global client, db, engine, session_factory
    client = AsyncIOMotorClient(
        cfg.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=0,
        serverSelectionTimeoutMS=cfg.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        socketTimeoutMS=cfg.MONGO_SOCKET_TIMEOUT_MS,
        appname=cfg.APP_NAME,
    )
    db = client[cfg.MONGO_DB]
    engine = create_sql_engine(cfg)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    # Either store may be down at boot; the audit path is built to live with that.
    try:
        await _ensure_indexes(cfg.MONGO_AUDIT_COLLECTION)
    except PyMongoError as exc:
        logger.warning("Skipped audit index creation, MongoDB unavailable: %s", exc)
    try:
        await create_fallback_table()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Skipped fallback table creation, relational store unavailable: %s", exc)


async def close_db() -> None:
    global client, engine
    if client:
        client.close()
    if engine is not None:
        await engine.dispose()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def create_fallback_table(sql_engine: AsyncEngine | None = None) -> None:
    """Create task_logs_fallback and its indexes if missing. Idempotent."""
    async with (sql_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _ensure_indexes(collection: str) -> None:
    """Create indexes on startup. Idempotent; safe to run repeatedly."""

    # ---- Task audit logs ----

    logs = db[collection]
    await logs.create_index([("created_at", DESCENDING)])
    await logs.create_index("entity_id")
    await logs.create_index("action")
    await logs.create_index([("entity_id", ASCENDING), ("created_at", DESCENDING)])
    await logs.create_index([("action", ASCENDING), ("created_at", DESCENDING)])
    await logs.create_index([("actor_id", ASCENDING), ("created_at", DESCENDING)], sparse=True)
