"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths for backend and root-level tool
    modules, plus the audit config and in-memory store doubles used across
    the audit test modules.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_REPO_ROOT = _THIS_FILE.parents[2]

for candidate in (str(_BACKEND_DIR), str(_REPO_ROOT)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from app.config import AuditSettings  # noqa: E402
from app.database import create_fallback_table  # noqa: E402


class FakePrimaryStore:
    """Primary store double: raises the queued errors in order, then accepts inserts."""

    name = "mongodb"

    def __init__(self, failures=(), ping_error: BaseException | None = None):
        self.failures = list(failures)
        self.ping_error = ping_error
        self.inserted = []
        self.insert_calls = 0
        self.ping_calls = 0

    async def ping(self):
        self.ping_calls += 1
        if self.ping_error is not None:
            raise self.ping_error
        return {"database": "task_logs"}

    async def insert(self, event, *, original_error=None):
        self.insert_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.inserted.append(event)
        return f"oid-{len(self.inserted)}"


@pytest.fixture
def audit_config(tmp_path) -> AuditSettings:
    return AuditSettings(
        max_attempts=3,
        base_delay_seconds=0.1,
        connection_timeout_seconds=0.5,
        sink_timeout_seconds=0.5,
        fallback_log_dir=tmp_path / "logs",
    )


@pytest_asyncio.fixture
async def sqlite_sessions(tmp_path):
    """File-backed SQLite standing in for the relational fallback database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fallback.db'}")
    await create_fallback_table(engine)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()
