"""
backend/app/services/audit_writer.py

Purpose:
    Resilient write path for audit events. Pings the primary store, retries
    connection-class failures with exponential backoff, and hands the event to
    the fallback chain when the primary is down, exhausted or rejects it.
    ``write()`` never raises.

Dependencies:
    - asyncio
    - app.services.connection_health
    - app.services.fallback_chain
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from app.config import AuditSettings
from app.models.audit import AuditEvent, SinkName, WriteOutcome
from app.services.audit_errors import AuditStoreError, ConnectivityError, classify_store_error
from app.services.audit_stores import AuditStore
from app.services.connection_health import ConnectionHealthChecker
from app.services.fallback_chain import FallbackChain

logger = logging.getLogger("taskaudit.writer")

SleepFn = Callable[[float], Awaitable[None]]


class RetryingWriter:
    def __init__(
        self,
        primary: AuditStore,
        health_checker: ConnectionHealthChecker,
        fallback_chain: FallbackChain,
        config: AuditSettings,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._primary = primary
        self._health = health_checker
        self._fallback = fallback_chain
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> AuditSettings:
        return self._config

    def reload(self, config: AuditSettings) -> None:
        """Swap in a freshly loaded configuration for the writer and its collaborators."""
        self._config = config
        self._health.reload(config)
        self._fallback.reload(config)
        logger.info(
            "Audit writer config reloaded: max_attempts=%d base_delay=%.3fs",
            config.max_attempts, config.base_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after a failed ``attempt`` (1-based): base * 2**(attempt-1)."""
        return self._config.base_delay_seconds * (2 ** (attempt - 1))

    async def write(self, event: AuditEvent) -> WriteOutcome:
        try:
            return await self._write(event)
        except Exception as exc:
            logger.exception(
                "Unexpected error in audit write path: entity_id=%s action=%s",
                event.entity_id, event.action.value,
            )
            try:
                return await self._fallback.try_write(event, f"{exc.__class__.__name__}: {exc}")
            except Exception:
                logger.exception("Fallback chain raised for entity_id=%s", event.entity_id)
                return WriteOutcome(
                    sink=SinkName.FALLBACK_ERRORLOG,
                    attempts=1,
                    last_error=str(exc),
                    terminal_failure=True,
                )

    async def _write(self, event: AuditEvent) -> WriteOutcome:
        max_attempts = self._config.max_attempts
        store = self._primary.name
        last_error: AuditStoreError | None = None
        attempt = 1

        for attempt in range(1, max_attempts + 1):
            health = await self._health.test_connection(store)
            if not health.is_healthy:
                # No point hammering a store the health check already found dead.
                last_error = ConnectivityError(
                    f"{store} unhealthy: {health.error or 'unknown error'}", store=store,
                )
                logger.warning(
                    "Primary audit store %s unhealthy on attempt %d/%d, using fallback: %s",
                    store, attempt, max_attempts, health.error,
                )
                break

            try:
                await asyncio.wait_for(
                    self._primary.insert(event),
                    timeout=self._config.sink_timeout_seconds,
                )
            except Exception as exc:
                last_error = classify_store_error(exc, store=store)
            else:
                if attempt > 1:
                    logger.info(
                        "Audit event written to %s after %d attempts: entity_id=%s",
                        store, attempt, event.entity_id,
                    )
                return WriteOutcome(sink=SinkName.PRIMARY, attempts=attempt)

            if not last_error.retryable:
                logger.warning(
                    "Non-retryable %s error on attempt %d/%d: entity_id=%s action=%s error=%s",
                    store, attempt, max_attempts, event.entity_id, event.action.value, last_error,
                )
                break

            logger.warning(
                "%s connection error on attempt %d/%d: entity_id=%s action=%s error=%s",
                store, attempt, max_attempts, event.entity_id, event.action.value, last_error,
            )
            if attempt < max_attempts:
                await self._sleep(self.backoff_delay(attempt))

        return await self._fallback.try_write(
            event,
            str(last_error) if last_error else None,
            attempts=attempt,
        )
