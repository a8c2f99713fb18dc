"""Ordered walk over the fallback sinks: relational table, JSON-lines file, process error log.

The first sink that accepts the event wins. The chain always returns a
WriteOutcome; even a failure of the last-resort sink only produces an internal
TerminalFailure log entry.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence

from app.config import AuditSettings
from app.models.audit import AuditEvent, SinkName, WriteOutcome
from app.services.audit_errors import FallbackSinkError, TerminalFailure
from app.services.audit_sinks import FallbackSink, SinkErr, SinkOk, SinkResult
from app.utils import dumps_json, utcnow

logger = logging.getLogger("taskaudit.fallback_chain")

FALLBACK_ORDER: tuple[SinkName, ...] = (
    SinkName.FALLBACK_RELATIONAL,
    SinkName.FALLBACK_FILE,
    SinkName.FALLBACK_ERRORLOG,
)


class FallbackChain:
    def __init__(self, sinks: Sequence[FallbackSink], config: AuditSettings):
        names = tuple(sink.name for sink in sinks)
        if names != FALLBACK_ORDER:
            raise ValueError(f"Fallback sinks must be ordered {FALLBACK_ORDER}, got {names}")
        self._sinks = tuple(sinks)
        self._config = config

    def reload(self, config: AuditSettings) -> None:
        self._config = config
        for sink in self._sinks:
            sink.reload(config)

    @property
    def sinks(self) -> tuple[FallbackSink, ...]:
        return self._sinks

    async def _attempt(self, sink: FallbackSink, event: AuditEvent, original_error: str | None) -> SinkResult:
        try:
            return await asyncio.wait_for(
                sink.write(event, original_error),
                timeout=self._config.sink_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            return SinkErr(sink.name, _sink_error(sink, f"timeout after {self._config.sink_timeout_seconds}s", exc))
        except Exception as exc:
            # Not an expected sink failure: keep the traceback, still advance.
            logger.exception(
                "Unexpected error in %s sink: entity_id=%s action=%s",
                sink.name.value, event.entity_id, event.action.value,
            )
            return SinkErr(sink.name, _sink_error(sink, f"{exc.__class__.__name__}: {exc}", exc))

    async def try_write(
        self,
        event: AuditEvent,
        original_error: str | None,
        attempts: int = 1,
    ) -> WriteOutcome:
        logger.info(
            "Attempting fallback logging: entity_id=%s action=%s original_error=%s",
            event.entity_id, event.action.value, original_error or "unknown",
        )
        last_error = original_error

        for sink in self._sinks:
            result = await self._attempt(sink, event, original_error)
            if isinstance(result, SinkOk):
                logger.info(
                    "Audit event recorded via %s: entity_id=%s action=%s",
                    sink.name.value, event.entity_id, event.action.value,
                )
                return WriteOutcome(sink=sink.name, attempts=attempts, last_error=original_error)

            last_error = str(result.error)
            logger.warning(
                "Fallback sink %s failed: entity_id=%s action=%s error=%s",
                sink.name.value, event.entity_id, event.action.value, last_error,
            )

        self._report_terminal_failure(event, original_error, last_error)
        return WriteOutcome(
            sink=SinkName.FALLBACK_ERRORLOG,
            attempts=attempts,
            accepted_at=utcnow(),
            last_error=last_error,
            terminal_failure=True,
        )

    def _report_terminal_failure(self, event: AuditEvent, original_error: str | None, last_error: str | None) -> None:
        failure = TerminalFailure(
            f"All audit sinks failed for entity_id={event.entity_id} action={event.action.value}: {last_error}"
        )
        try:
            logger.critical("%s (original_error=%s)", failure, original_error)
            sys.stderr.write(
                "TaskLog terminal failure: "
                + dumps_json({"entity_id": event.entity_id, "action": event.action.value, "error": last_error})
                + "\n"
            )
        except Exception:
            pass  # stderr is gone too; nothing left to report to


def _sink_error(sink: FallbackSink, message: str, cause: BaseException) -> FallbackSinkError:
    return FallbackSinkError(message, store=sink.name.value, cause=cause)
