"""Liveness checks for the audit stores.

The retrying writer pings the primary before every insert attempt so a known-dead
store is never written to; the same check backs the /health/databases endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping

from app.config import AuditSettings
from app.models.audit import HealthStatus
from app.services.audit_errors import is_connection_error
from app.services.audit_stores import AuditStore
from app.utils import utcnow

logger = logging.getLogger("taskaudit.health")

HEALTHY = "healthy"
FAILED = "failed"


class ConnectionHealthChecker:
    def __init__(self, stores: Mapping[str, AuditStore], config: AuditSettings):
        self._stores = dict(stores)
        self._config = config

    def reload(self, config: AuditSettings) -> None:
        self._config = config

    @property
    def store_names(self) -> list[str]:
        return list(self._stores)

    async def test_connection(self, store_name: str) -> HealthStatus:
        """Ping ``store_name`` within the configured timeout. Never raises."""
        start = time.perf_counter()
        store = self._stores.get(store_name)
        if store is None:
            return HealthStatus(
                store=store_name,
                status=FAILED,
                response_time_ms=0.0,
                error=f"Unsupported store: {store_name}",
            )

        try:
            await asyncio.wait_for(store.ping(), timeout=self._config.connection_timeout_seconds)
        except asyncio.TimeoutError:
            error = f"{store_name} ping timeout after {self._config.connection_timeout_seconds}s"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        else:
            return HealthStatus(
                store=store_name,
                status=HEALTHY,
                response_time_ms=_elapsed_ms(start),
            )

        level = logging.WARNING if is_connection_error(error) else logging.ERROR
        logger.log(level, "Health check failed for %s: %s", store_name, error)
        return HealthStatus(
            store=store_name,
            status=FAILED,
            response_time_ms=_elapsed_ms(start),
            error=error,
        )

    def is_connection_error(self, err: BaseException | str) -> bool:
        return is_connection_error(err)

    async def get_health_summary(self) -> dict:
        """Check every configured store concurrently."""
        names = self.store_names
        results = await asyncio.gather(*(self.test_connection(name) for name in names))
        connections = {status.store: status.model_dump(mode="json") for status in results}
        all_healthy = all(status.is_healthy for status in results)
        return {
            "overall_status": HEALTHY if all_healthy else "degraded",
            "connections": connections,
            "timestamp": utcnow().isoformat(),
        }


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
