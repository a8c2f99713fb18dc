import json
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.utils import resolve_request_id

logger = logging.getLogger("taskaudit.http")

# Driver chatter that drowns out the audit path at INFO.
_QUIET_LOGGERS = ("pymongo", "motor", "aiosqlite", "asyncpg", "sqlalchemy.engine")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON line per request; exposes ``request.state.request_id`` for audit context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get("x-request-id"))
        request.state.request_id = request_id
        start = time.perf_counter()

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        try:
            response: Response = await call_next(request)
        except Exception:
            log_data["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            logger.error(json.dumps({**log_data, "status": 500, "error": "unhandled"}))
            raise

        log_data["status"] = response.status_code
        log_data["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
