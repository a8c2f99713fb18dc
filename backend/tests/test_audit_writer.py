"""
backend/tests/test_audit_writer.py

Purpose:
    Retrying write path: health check before every insert, bounded
    exponential backoff for connection-class failures, immediate fallback for
    everything else, and a WriteOutcome on every call.

Dependencies:
    - app.services.audit_writer
"""

from __future__ import annotations

import logging

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError

from app.models.audit import SinkName
from app.services import audit_event_builder as builder
from app.services.audit_sinks import FallbackSink
from app.services.audit_writer import RetryingWriter
from app.services.connection_health import ConnectionHealthChecker
from app.services.fallback_chain import FallbackChain
from conftest import FakePrimaryStore


class RecordingSink(FallbackSink):
    def __init__(self, name: SinkName, error: BaseException | None = None):
        self.name = name
        self.error = error
        self.received: list[tuple] = []

    async def _write(self, event, original_error):
        if self.error is not None:
            raise self.error
        self.received.append((event, original_error))
        return f"{self.name.value}-ref"


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _event():
    return builder.build_from_activity(11, "updated", {"status": "todo"}, {"status": "done"})


def _writer(primary, config, relational_error=None, file_error=None):
    sinks = [
        RecordingSink(SinkName.FALLBACK_RELATIONAL, relational_error),
        RecordingSink(SinkName.FALLBACK_FILE, file_error),
        RecordingSink(SinkName.FALLBACK_ERRORLOG),
    ]
    health = ConnectionHealthChecker({primary.name: primary}, config)
    sleep = SleepRecorder()
    writer = RetryingWriter(primary, health, FallbackChain(sinks, config), config, sleep=sleep)
    return writer, sinks, sleep


@pytest.mark.asyncio
async def test_healthy_primary_writes_once_without_fallback(audit_config):
    primary = FakePrimaryStore()
    writer, sinks, sleep = _writer(primary, audit_config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.PRIMARY
    assert outcome.attempts == 1
    assert outcome.used_fallback is False
    assert primary.insert_calls == 1
    assert primary.ping_calls == 1
    assert sleep.delays == []
    assert all(not sink.received for sink in sinks)


@pytest.mark.asyncio
async def test_connection_errors_retry_with_increasing_backoff_then_succeed(audit_config):
    primary = FakePrimaryStore(failures=[AutoReconnect("connection refused"), AutoReconnect("connection refused")])
    writer, sinks, sleep = _writer(primary, audit_config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.PRIMARY
    assert outcome.attempts == 3
    assert sleep.delays == pytest.approx([0.1, 0.2])
    # Pinged before every attempt.
    assert primary.ping_calls == 3
    assert all(not sink.received for sink in sinks)


@pytest.mark.asyncio
async def test_exhausted_retries_fall_back_to_relational(audit_config):
    config = audit_config.model_copy(update={"max_attempts": 4})
    primary = FakePrimaryStore(failures=[TimeoutError("operation timed out")] * 4)
    writer, sinks, sleep = _writer(primary, config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.FALLBACK_RELATIONAL
    assert outcome.attempts == 4
    assert "timed out" in outcome.last_error
    assert primary.insert_calls == 4
    assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])
    assert all(later > earlier for earlier, later in zip(sleep.delays, sleep.delays[1:]))
    event, original_error = sinks[0].received[0]
    assert event.entity_id == 11
    assert "timed out" in original_error


@pytest.mark.asyncio
async def test_non_connection_error_is_not_retried(audit_config):
    primary = FakePrimaryStore(failures=[DuplicateKeyError("E11000 duplicate key error")])
    writer, sinks, sleep = _writer(primary, audit_config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.FALLBACK_RELATIONAL
    assert outcome.attempts == 1
    assert primary.insert_calls == 1
    assert sleep.delays == []
    assert "duplicate key" in sinks[0].received[0][1]


@pytest.mark.asyncio
async def test_unhealthy_primary_is_never_written_to(audit_config):
    primary = FakePrimaryStore(ping_error=ConnectionRefusedError("Connection refused"))
    writer, sinks, sleep = _writer(primary, audit_config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.FALLBACK_RELATIONAL
    assert primary.insert_calls == 0
    assert sleep.delays == []
    assert "unhealthy" in outcome.last_error


@pytest.mark.asyncio
async def test_chain_walks_to_file_when_relational_fails(audit_config):
    primary = FakePrimaryStore(ping_error=ConnectionRefusedError("Connection refused"))
    writer, sinks, _ = _writer(primary, audit_config, relational_error=OSError("database is locked"))

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.FALLBACK_FILE
    assert sinks[1].received
    assert not sinks[2].received


@pytest.mark.asyncio
async def test_write_returns_outcome_even_when_every_sink_fails(audit_config, caplog):
    primary = FakePrimaryStore(ping_error=ConnectionRefusedError("Connection refused"))
    sinks = [
        RecordingSink(SinkName.FALLBACK_RELATIONAL, OSError("db down")),
        RecordingSink(SinkName.FALLBACK_FILE, PermissionError("read-only filesystem")),
        RecordingSink(SinkName.FALLBACK_ERRORLOG, OSError("log closed")),
    ]
    health = ConnectionHealthChecker({primary.name: primary}, audit_config)
    writer = RetryingWriter(primary, health, FallbackChain(sinks, audit_config), audit_config, sleep=SleepRecorder())

    with caplog.at_level(logging.CRITICAL, logger="taskaudit.fallback_chain"):
        outcome = await writer.write(_event())

    assert outcome.terminal_failure is True
    assert outcome.sink is SinkName.FALLBACK_ERRORLOG
    assert any("All audit sinks failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_unexpected_primary_exception_still_yields_outcome(audit_config):
    class ExplodingStore(FakePrimaryStore):
        async def insert(self, event, *, original_error=None):
            raise KeyError("entity_id")

    primary = ExplodingStore()
    writer, sinks, sleep = _writer(primary, audit_config)

    outcome = await writer.write(_event())

    assert outcome.sink is SinkName.FALLBACK_RELATIONAL
    assert sleep.delays == []


def test_backoff_delay_and_reload(audit_config):
    writer, _, _ = _writer(FakePrimaryStore(), audit_config)
    assert [writer.backoff_delay(n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])

    writer.reload(audit_config.model_copy(update={"base_delay_seconds": 0.25, "max_attempts": 5}))

    assert writer.config.max_attempts == 5
    assert writer.backoff_delay(2) == pytest.approx(0.5)
