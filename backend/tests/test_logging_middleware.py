"""
backend/tests/test_logging_middleware.py

Purpose:
    Request id propagation used as the audit correlation id.
"""

from __future__ import annotations

import pytest
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.logging import StructuredLoggingMiddleware, resolve_request_id


def _request(headers: list[tuple[bytes, bytes]]) -> Request:
    return Request({"type": "http", "method": "POST", "path": "/api/tasks", "headers": headers})


def test_resolve_request_id():
    assert resolve_request_id("edge-7f3a.1") == "edge-7f3a.1"
    assert len(resolve_request_id(None)) == 16
    assert resolve_request_id("x" * 65) != "x" * 65
    assert resolve_request_id("bad id; drop table") != "bad id; drop table"


@pytest.mark.asyncio
async def test_dispatch_sets_state_and_response_header():
    seen = {}

    async def _call_next(request):
        seen["request_id"] = request.state.request_id
        return Response("ok", status_code=201)

    middleware = StructuredLoggingMiddleware(app=None)
    response = await middleware.dispatch(_request([(b"x-request-id", b"upstream-42")]), _call_next)

    assert seen["request_id"] == "upstream-42"
    assert response.headers["X-Request-ID"] == "upstream-42"


@pytest.mark.asyncio
async def test_dispatch_logs_and_reraises_failures(caplog):
    async def _call_next(request):
        raise RuntimeError("handler exploded")

    middleware = StructuredLoggingMiddleware(app=None)
    with pytest.raises(RuntimeError):
        await middleware.dispatch(_request([]), _call_next)

    assert any('"status": 500' in r.getMessage() for r in caplog.records)
