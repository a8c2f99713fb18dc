"""
backend/tests/test_audit_service.py

Purpose:
    Domain-facing audit facade (isolation from the caller), component wiring,
    runtime config reload and the log read endpoints.

Dependencies:
    - app.services.audit_service
    - app.routers.logs
    - app.main
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from app.config import AuditSettings
from app.models.audit import Actor, SinkName, WriteOutcome
from app.models.audit_query import LogPage
from app.routers import logs as logs_router
from app.services.audit_query_service import LogNotFoundError, parse_log_id
from app.services.audit_service import TaskAuditService, build_audit_components
from app.services.audit_sinks import FileSink, ProcessErrorSink, RelationalFallbackSink


class CapturingWriter:
    def __init__(self, outcome=None, error=None):
        self.events = []
        self.outcome = outcome or WriteOutcome(sink=SinkName.PRIMARY, attempts=1)
        self.error = error

    async def write(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.outcome


def _app_request(audit) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "headers": [],
        "app": SimpleNamespace(state=SimpleNamespace(audit=audit)),
    })


@pytest.mark.asyncio
async def test_log_task_activity_builds_and_writes_event():
    writer = CapturingWriter()
    service = TaskAuditService(writer)

    outcome = await service.log_task_activity(
        task_id=3,
        action="updated",
        old_state={"status": "todo"},
        new_state={"status": "in_progress"},
        actor=Actor(id=1, name="Ana"),
    )

    assert outcome.sink is SinkName.PRIMARY
    event = writer.events[0]
    assert event.entity_id == 3
    assert event.metadata["changed_fields"] == ["status"]
    assert event.actor_name == "Ana"


@pytest.mark.asyncio
async def test_log_deletion_invalid_type_does_not_raise():
    writer = CapturingWriter()
    service = TaskAuditService(writer)

    outcome = await service.log_deletion(task_id=3, deletion_type="shred", task_state={"title": "x"})

    assert outcome is None
    assert writer.events == []


@pytest.mark.asyncio
async def test_writer_crash_is_isolated_from_caller():
    service = TaskAuditService(CapturingWriter(error=RuntimeError("boom")))

    outcome = await service.log_deletion(task_id=3, deletion_type="force", task_state={"title": "x"})

    assert outcome is None


@pytest.mark.asyncio
async def test_terminal_failure_is_returned(caplog):
    terminal = WriteOutcome(sink=SinkName.FALLBACK_ERRORLOG, attempts=3, last_error="all down", terminal_failure=True)
    service = TaskAuditService(CapturingWriter(outcome=terminal))

    outcome = await service.log_task_activity(task_id=9, action="created", new_state={"title": "t"})

    assert outcome.terminal_failure is True
    assert any("Audit trail missing" in r.getMessage() for r in caplog.records)


def test_components_share_one_config(tmp_path):
    config = AuditSettings(fallback_log_dir=tmp_path, primary_collection="audit_trail")
    components = build_audit_components(SimpleNamespace(), lambda: None, config)

    sinks = components.writer._fallback.sinks
    assert [type(s) for s in sinks] == [RelationalFallbackSink, FileSink, ProcessErrorSink]
    assert sinks[1].log_dir == tmp_path
    assert components.health.store_names == ["mongodb", "relational"]
    assert components.writer.config is config


def test_reload_audit_config_reads_environment(monkeypatch, tmp_path):
    from app.main import reload_audit_config

    components = build_audit_components(SimpleNamespace(), lambda: None, AuditSettings(fallback_log_dir=tmp_path))
    application = SimpleNamespace(state=SimpleNamespace(audit=components))
    monkeypatch.setenv("AUDIT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("AUDIT_BASE_DELAY_MS", "250")
    monkeypatch.setenv("AUDIT_FALLBACK_LOG_DIR", str(tmp_path / "reloaded"))

    config = reload_audit_config(application)

    assert config.max_attempts == 5
    assert config.base_delay_seconds == pytest.approx(0.25)
    assert components.writer.config is config
    assert components.writer._fallback.sinks[1].log_dir == tmp_path / "reloaded"


@pytest.mark.asyncio
async def test_list_logs_endpoint_splits_comma_actions():
    seen = []

    async def _find_with_filters(query):
        seen.append(query)
        return LogPage(limit=query.limit, offset=query.offset, filters=query.applied_filters())

    audit = SimpleNamespace(query=SimpleNamespace(find_with_filters=_find_with_filters))

    page = await logs_router.list_logs(
        request=_app_request(audit),
        entity_id=12,
        action=["deleted,restored", "force_deleted"],
        actor_id=None,
        date_from=None,
        date_to=None,
        sort_by="created_at",
        sort_order="desc",
        limit=20,
        offset=0,
    )

    assert [a.value for a in seen[0].actions] == ["deleted", "restored", "force_deleted"]
    assert page.filters == {"entity_id": 12, "action": ["deleted", "restored", "force_deleted"]}


@pytest.mark.asyncio
async def test_database_health_endpoint_returns_summary():
    async def _summary():
        return {"overall_status": "healthy", "connections": {}, "timestamp": "now"}

    audit = SimpleNamespace(health=SimpleNamespace(get_health_summary=_summary))

    result = await logs_router.database_health(_app_request(audit))

    assert result["overall_status"] == "healthy"


@pytest.mark.asyncio
async def test_get_log_endpoint_maps_missing_and_malformed_ids():
    async def _find_by_id(log_id):
        parse_log_id(log_id)
        raise LogNotFoundError(log_id)

    request = _app_request(SimpleNamespace(query=SimpleNamespace(find_by_id=_find_by_id)))

    with pytest.raises(HTTPException) as missing:
        await logs_router.get_log(request, "fallback_41")
    assert missing.value.status_code == 404
    assert missing.value.detail == "Log not found"

    with pytest.raises(HTTPException) as malformed:
        await logs_router.get_log(request, "fallback_x")
    assert malformed.value.status_code == 400
