"""
backend/app/services/audit_errors.py

Purpose:
    Error taxonomy for the audit write/read paths and the single
    connection-class signature table used by both the retrying writer and the
    health checker.

Dependencies:
    - pymongo.errors
    - sqlalchemy.exc
"""

from __future__ import annotations

import asyncio

from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)
from sqlalchemy import exc as sa_exc


class AuditStoreError(Exception):
    """Base for classified store failures. ``retryable`` drives the writer loop."""

    retryable = False

    def __init__(self, message: str, *, store: str | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.store = store
        self.cause = cause


class ConnectivityError(AuditStoreError):
    """Store unreachable or timed out."""

    retryable = True


class TransientStoreError(AuditStoreError):
    """Store reachable but temporarily refusing work (failover, overload)."""

    retryable = True


class PermanentStoreError(AuditStoreError):
    """Malformed document, auth failure, constraint violation. Never retried."""


class FallbackSinkError(AuditStoreError):
    """One fallback sink rejected the event; the chain advances."""


class TerminalFailure(AuditStoreError):
    """Every sink, including the last-resort one, failed."""


# ---------------------------------------------------------------------------
# Connection-class signatures
# ---------------------------------------------------------------------------

CONNECTION_ERROR_TYPES: tuple[type[BaseException], ...] = (
    ConnectionFailure,  # AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,  # pool checkout timeout
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

CONNECTION_ERROR_CODES: frozenset[int] = frozenset({
    # MySQL client/server
    2002,  # connection refused
    2003,  # can't connect to server
    2006,  # server has gone away
    2013,  # lost connection during query
    1040,  # too many connections
    1129,  # host blocked after too many connection errors
    1203,  # max_user_connections exceeded
    # MongoDB
    6,      # HostUnreachable
    7,      # HostNotFound
    89,     # NetworkTimeout
    91,     # ShutdownInProgress
    189,    # PrimarySteppedDown
    10107,  # NotWritablePrimary
    11600,  # InterruptedAtShutdown
    11602,  # InterruptedDueToReplStateChange
    13435,  # NotPrimaryNoSecondaryOk
})

CONNECTION_ERROR_MESSAGES: tuple[str, ...] = (
    "connection refused",
    "server has gone away",
    "lost connection",
    "too many connections",
    "timeout",
    "timed out",
    "can't connect to",
    "connection closed",
    "connection reset",
    "broken pipe",
    "no servers available",
    "not primary",
)

# Subset of the above that indicate a live-but-busy store rather than a dead link.
_TRANSIENT_MESSAGES: tuple[str, ...] = ("too many connections", "not primary")
_TRANSIENT_CODES: frozenset[int] = frozenset({1040, 1203, 189, 10107, 11602, 13435})


def _error_code(err: BaseException) -> int | None:
    code = getattr(err, "code", None)
    if code is None:
        orig = getattr(err, "orig", None)  # SQLAlchemy DBAPIError wraps the driver error
        if orig is not None:
            code = getattr(orig, "code", None)
            if code is None and getattr(orig, "args", None):
                code = orig.args[0]
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def is_connection_error(err: BaseException | str) -> bool:
    """True when ``err`` matches the connection-class signature table.

    Accepts an exception or a bare message (as surfaced by health checks).
    """
    if isinstance(err, str):
        message = err.lower()
        return any(sig in message for sig in CONNECTION_ERROR_MESSAGES)

    if isinstance(err, CONNECTION_ERROR_TYPES):
        return True
    # A duplicate key is a data problem even when the message mentions a timeout field.
    if isinstance(err, DuplicateKeyError):
        return False

    code = _error_code(err)
    if code is not None and code in CONNECTION_ERROR_CODES:
        return True

    return is_connection_error(str(err))


def classify_store_error(err: BaseException, *, store: str | None = None) -> AuditStoreError:
    """Wrap a raw driver error into the audit taxonomy."""
    if isinstance(err, AuditStoreError):
        return err

    message = str(err) or err.__class__.__name__
    if is_connection_error(err):
        code = _error_code(err)
        lowered = message.lower()
        if (code is not None and code in _TRANSIENT_CODES) or any(
            sig in lowered for sig in _TRANSIENT_MESSAGES
        ):
            return TransientStoreError(message, store=store, cause=err)
        return ConnectivityError(message, store=store, cause=err)

    if isinstance(err, (OperationFailure, PyMongoError, sa_exc.SQLAlchemyError)):
        return PermanentStoreError(message, store=store, cause=err)
    return PermanentStoreError(f"{err.__class__.__name__}: {message}", store=store, cause=err)
