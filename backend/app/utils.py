import json
import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC.

    SQLite drops the offset on storage, so every bound must already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    # ObjectId and friends
    return str(value)


def dumps_json(value: Any) -> str:
    """Serialize task state for text columns and log lines (datetimes as ISO-8601)."""
    return json.dumps(value, default=_json_default, ensure_ascii=False, separators=(",", ":"))


# Fits task_logs_fallback.request_id (String(64)).
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Fits task_logs_fallback.ip_address (String(45), the longest IPv6 text form).
MAX_IP_LENGTH = 45


def resolve_request_id(value: str | None) -> str:
    """Reuse a well-formed upstream request id, otherwise mint a new one."""
    if value and _REQUEST_ID_RE.match(value):
        return value
    return uuid.uuid4().hex[:16]
