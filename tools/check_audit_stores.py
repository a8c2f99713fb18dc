"""Check the audit stores and print their health (and optionally recent statistics).

Usage:
    python -m tools.check_audit_stores
    python -m tools.check_audit_stores --json
    python -m tools.check_audit_stores --stats-days 7

Exit code is 0 when every store is healthy, 1 when any store is degraded.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta

sys.path.insert(0, "backend")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-7s %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("check_audit_stores")


async def run(as_json: bool, stats_days: int | None) -> int:
    import app.database as _db
    from app.config import AuditSettings, settings
    from app.services.audit_service import build_audit_components
    from app.utils import utcnow

    await _db.connect_db()
    try:
        components = build_audit_components(_db.db, _db.session_factory, AuditSettings.from_settings(settings))
        summary = await components.health.get_health_summary()

        stats = None
        if stats_days:
            end = utcnow()
            stats = await components.query.get_statistics(end - timedelta(days=stats_days), end)
    finally:
        await _db.close_db()

    if as_json:
        print(json.dumps({"health": summary, "statistics": stats}, indent=2, default=str))
    else:
        log.info("Overall: %s", summary["overall_status"])
        for name, info in summary["connections"].items():
            log.info(
                "  %-12s %-8s %7.2f ms %s",
                name, info["status"], info["response_time_ms"], info.get("error") or "",
            )
        if stats:
            log.info(
                "Last %d days: total=%d source=%s%s",
                stats_days, stats["total"], stats["source"], " [DEGRADED]" if stats["degraded"] else "",
            )
            for action, count in stats["counts_by_action"].items():
                log.info("  %-14s %d", action, count)

    return 0 if summary["overall_status"] == "healthy" else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Check audit store connectivity.")
    parser.add_argument("--json", action="store_true", help="Print the raw summary as JSON.")
    parser.add_argument("--stats-days", type=int, default=None, help="Also print action counts for the last N days.")
    args = parser.parse_args()

    code = asyncio.run(run(args.json, args.stats_days))
    sys.exit(code)


if __name__ == "__main__":
    main()
