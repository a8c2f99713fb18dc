"""
backend/app/services/audit_sinks.py

Purpose:
    Fallback persistence targets for audit events the primary store did not
    accept. Each sink reports its result as a value (SinkOk / SinkErr) so the
    chain walker never uses exceptions for the expected fallback signal.

Dependencies:
    - sqlalchemy (via RelationalAuditStore)
    - fcntl / os (exclusive append)
    - app.services.audit_stores
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from sqlalchemy.exc import SQLAlchemyError

from app.config import AuditSettings
from app.models.audit import AuditEvent, SinkName
from app.services.audit_errors import FallbackSinkError, classify_store_error
from app.services.audit_stores import RelationalAuditStore
from app.utils import dumps_json, utcnow

logger = logging.getLogger("taskaudit.sinks")

FALLBACK_FILE_PREFIX = "task_logs_fallback"

# Failures a sink reports as SinkErr. Anything else is a bug and is left to the chain.
EXPECTED_SINK_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    SQLAlchemyError,
    ConnectionError,
    TimeoutError,
    ValueError,
)


@dataclass(frozen=True)
class SinkOk:
    sink: SinkName
    reference: str | None = None


@dataclass(frozen=True)
class SinkErr:
    sink: SinkName
    error: FallbackSinkError


SinkResult = Union[SinkOk, SinkErr]


class FallbackSink:
    name: SinkName

    def reload(self, config: AuditSettings) -> None:
        """Most sinks hold no tunables."""

    async def write(self, event: AuditEvent, original_error: str | None) -> SinkResult:
        try:
            reference = await self._write(event, original_error)
        except EXPECTED_SINK_ERRORS as exc:
            classified = classify_store_error(exc, store=self.name.value)
            return SinkErr(
                self.name,
                FallbackSinkError(str(classified), store=self.name.value, cause=exc),
            )
        return SinkOk(self.name, reference)

    async def _write(self, event: AuditEvent, original_error: str | None) -> str | None:
        raise NotImplementedError


class RelationalFallbackSink(FallbackSink):
    """One INSERT into task_logs_fallback. Duplicate rows from retry races are accepted."""

    name = SinkName.FALLBACK_RELATIONAL

    def __init__(self, store: RelationalAuditStore):
        self._store = store

    async def _write(self, event: AuditEvent, original_error: str | None) -> str | None:
        return await self._store.insert(event, original_error=original_error)


def fallback_log_path(log_dir: Path, day=None) -> Path:
    day = day or utcnow().date()
    return Path(log_dir) / f"{FALLBACK_FILE_PREFIX}-{day.isoformat()}.log"


def _append_line(path: Path, line: str) -> None:
    """Append one line under an exclusive flock so concurrent writers never interleave."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = line.encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            written = os.write(fd, data)
            if written != len(data):
                raise OSError(f"Short write to {path}: {written}/{len(data)} bytes")
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class FileSink(FallbackSink):
    """Dated JSON-lines file under the configured fallback log directory."""

    name = SinkName.FALLBACK_FILE

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)

    def reload(self, config: AuditSettings) -> None:
        self.log_dir = Path(config.fallback_log_dir)

    def build_line(self, event: AuditEvent, original_error: str | None) -> str:
        entry = {
            "timestamp": utcnow().isoformat(),
            "level": "INFO",
            "message": "Fallback task log entry",
            "context": {
                "entity_id": event.entity_id,
                "action": event.action.value,
                "payload": {
                    **event.payload(),
                    "description": event.description,
                    "actor_id": event.actor_id,
                    "request_context": event.request_context.model_dump(),
                    "original_error": original_error,
                },
                "source": "FileSink",
            },
        }
        return dumps_json(entry) + "\n"

    async def _write(self, event: AuditEvent, original_error: str | None) -> str | None:
        path = fallback_log_path(self.log_dir)
        line = self.build_line(event, original_error)
        await asyncio.to_thread(_append_line, path, line)
        return str(path)


class ProcessErrorSink(FallbackSink):
    """Last resort: one structured CRITICAL line on the process log. Best effort, never retried."""

    name = SinkName.FALLBACK_ERRORLOG

    def __init__(self, sink_logger: logging.Logger | None = None):
        self._logger = sink_logger or logging.getLogger("taskaudit.audit.fallback")

    async def _write(self, event: AuditEvent, original_error: str | None) -> str | None:
        record = {
            "timestamp": utcnow().isoformat(),
            "entity_id": event.entity_id,
            "action": event.action.value,
            "data": event.payload(),
            "description": event.description,
            "original_error": original_error,
            "all_fallbacks_failed": True,
        }
        self._logger.critical("TaskLog fallback: %s", dumps_json(record))
        return None
