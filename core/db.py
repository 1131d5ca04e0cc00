"""
core/db.py -- Engine construction, timestamp format and transient-failure policy.

Shared by auth/store.py and audit/store.py so both repositories open
connections, stamp times and treat store outages the same way.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision, +00:00
  offset). Fixed width means lexicographic order == chronological order, so
  SQL comparisons such as "locked_until > :now" are correct on plain TEXT
  columns in every backend.

Retry policy [R1]:
  Reads are idempotent and are retried on OperationalError (locked database,
  dropped connection) with a short exponential backoff via tenacity.
  Mutations are never retried here -- a write that may or may not have
  landed (a failure-counter increment, say) must not be replayed blindly.
  Both paths surface exhaustion as core.errors.StoreUnavailable.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import StoreUnavailable

logger = logging.getLogger("complianceauth.db")

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create an Engine with the SQLite settings every store needs.

    check_same_thread=False: FastAPI runs sync routes in a threadpool.
    timeout: bounded wait on a locked database instead of blocking forever.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO 8601 string (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Transient-failure policy [R1]
# ---------------------------------------------------------------------------


def idempotent_read(fn):
    """Retry a read on OperationalError, then raise StoreUnavailable."""
    retrying = retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )(fn)

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except OperationalError as exc:
            logger.error("Read %s failed after retries: %s", fn.__name__, exc)
            raise StoreUnavailable(fn.__name__) from exc

    return wrapper


def guarded_write(fn):
    """Translate OperationalError on a mutation into StoreUnavailable. No retry."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OperationalError as exc:
            logger.error("Write %s failed: %s", fn.__name__, exc)
            raise StoreUnavailable(fn.__name__) from exc

    return wrapper
