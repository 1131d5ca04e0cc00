"""
audit/store.py -- SQLAlchemy Core persistence for the hash-chained audit trail.

Pattern: Repository + Data Mapper (same as auth/store.py).
AuditTrail is the repository; _row_to_entry is the mapper.

Ordering guarantee [A1]:
  The chain head (last seq, last hash) is a single store-resident row, never
  process state, so any number of workers and processes share one order.
  append() runs in one transaction:
    1. read the head (SELECT ... FOR UPDATE where the backend supports it)
    2. compute the new hash from the head's hash
    3. advance the head with a conditional UPDATE (WHERE last_seq = observed)
    4. insert the entry (seq is the primary key)
  If another writer advanced the head first, step 3 matches zero rows (or
  step 4 hits the primary key, or SQLite refuses to upgrade a stale snapshot);
  the transaction rolls back with nothing written and tenacity retries the
  append (jittered backoff) against the new head. Two appends can never
  chain off the same predecessor.

Append-only [A2]:
  The repository exposes no update or delete for entries. Tamper detection
  is verify(), which replays the chain (see audit/chain.py).

DB path: audit/complianceauth_audit.db by default (separate file from the
identity store so retention and backup policies can differ).

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sqlalchemy import CheckConstraint, Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from audit.chain import compute_hash, verify_entries
from audit.models import AuditEvent, AuditLogEntry, ChainVerification
from core.db import guarded_write, idempotent_read, make_engine, to_iso, utcnow
from core.errors import StoreUnavailable

logger = logging.getLogger("complianceauth.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'complianceauth_audit.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("seq", Integer, primary_key=True, autoincrement=False),
    Column("actor_id", Integer, index=True),  # NULL for unauthenticated actors
    Column("action", String(64), nullable=False, index=True),
    Column("category", String(16), nullable=False),
    Column("entity_type", String(64)),
    Column("entity_id", String(128)),
    Column("details", Text, nullable=False, server_default="{}"),  # canonical JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("prev_hash", String(64), nullable=False),
    Column("self_hash", String(64), nullable=False),
)

_chain_head = Table(
    "audit_chain_head",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("last_seq", Integer, nullable=False, server_default="0"),
    Column("last_hash", String(64), nullable=False, server_default=""),
    CheckConstraint("id = 1", name="audit_chain_head_single_row"),
)


class _ChainContention(Exception):
    """The head moved between read and conditional update. Internal only."""


def _log_contention(state: RetryCallState) -> None:
    logger.warning(
        "Audit append contention (attempt %d): %s",
        state.attempt_number,
        state.outcome.exception() if state.outcome else None,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditTrail:
    """Append-only audit repository.

    Usage:
        trail = AuditTrail()
        trail.append(AuditEvent(action="LOGIN_SUCCESS", actor_id=7))
        trail.verify().valid  # -> True
        trail.close()
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
        timeout: float = 5.0,
    ) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        self._clock = clock
        self._max_attempts = max(1, max_attempts)
        _metadata.create_all(self.engine)
        self._ensure_chain_head()

    def _ensure_chain_head(self) -> None:
        """Seed the single chain-head row (id=1) if it is missing.

        Two processes starting together may both try the insert; the loser's
        IntegrityError just means the row is already there.
        """
        with self.engine.connect() as conn:
            exists = conn.execute(select(_chain_head.c.id).where(_chain_head.c.id == 1)).fetchone()
            if exists is None:
                try:
                    conn.execute(_chain_head.insert().values(id=1, last_seq=0, last_hash=""))
                    conn.commit()
                except IntegrityError:
                    conn.rollback()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @guarded_write
    def append(self, event: AuditEvent) -> AuditLogEntry:
        """Persist an event at the end of the chain and return the stored entry.

        Raises StoreUnavailable when the head stays contended for every
        attempt. Retrying is safe because a lost race rolls back before
        anything is committed.
        """
        if not event.action:
            raise ValueError("Audit event action must be non-empty.")
        retrying = Retrying(
            retry=retry_if_exception_type((_ChainContention, IntegrityError, OperationalError)),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_random_exponential(multiplier=0.01, max=0.2),
            before_sleep=_log_contention,
            reraise=False,
        )
        try:
            return retrying(self._append_once, event)
        except RetryError as exc:
            logger.error("Audit append gave up after %d attempts", exc.last_attempt.attempt_number)
            raise StoreUnavailable("audit_append", "Audit chain head is contended.") from exc.last_attempt.exception()

    def _append_once(self, event: AuditEvent) -> AuditLogEntry:
        details = json.loads(json.dumps(event.details or {}, default=str))
        with self.engine.begin() as conn:
            head = conn.execute(select(_chain_head).where(_chain_head.c.id == 1).with_for_update()).one()
            seq = head.last_seq + 1
            created_at = to_iso(self._clock())
            self_hash = compute_hash(
                head.last_hash,
                actor_id=event.actor_id,
                action=event.action,
                category=event.category,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                details=details,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                created_at=created_at,
            )
            moved = conn.execute(
                _chain_head.update()
                .where((_chain_head.c.id == 1) & (_chain_head.c.last_seq == head.last_seq))
                .values(last_seq=seq, last_hash=self_hash)
            )
            if moved.rowcount != 1:
                raise _ChainContention(f"head moved past seq {head.last_seq}")
            conn.execute(
                _audit_log.insert().values(
                    seq=seq,
                    actor_id=event.actor_id,
                    action=event.action,
                    category=event.category,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    details=json.dumps(details, sort_keys=True, separators=(",", ":")),
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    created_at=created_at,
                    prev_hash=head.last_hash,
                    self_hash=self_hash,
                )
            )
        return AuditLogEntry(
            seq=seq,
            actor_id=event.actor_id,
            action=event.action,
            category=event.category,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            details=details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=created_at,
            prev_hash=head.last_hash,
            self_hash=self_hash,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @idempotent_read
    def verify(self) -> ChainVerification:
        """Replay the whole chain in sequence order [A2]."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_audit_log).order_by(_audit_log.c.seq))
            result = verify_entries(_row_to_entry(r) for r in rows)
        if not result.valid:
            logger.error(
                "Audit chain verification failed at position %s (seq %s): %s",
                result.first_invalid,
                result.first_invalid_seq,
                result.reason,
            )
        return result

    @idempotent_read
    def list_entries(
        self,
        actor_id: int | None = None,
        action: str | None = None,
        category: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Return entries newest first, optionally filtered."""
        query = select(_audit_log)
        if actor_id is not None:
            query = query.where(_audit_log.c.actor_id == actor_id)
        if action:
            query = query.where(_audit_log.c.action == action)
        if category:
            query = query.where(_audit_log.c.category == category)
        query = query.order_by(_audit_log.c.seq.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    @idempotent_read
    def count(self, actor_id: int | None = None, action: str | None = None, category: str | None = None) -> int:
        query = select(func.count()).select_from(_audit_log)
        if actor_id is not None:
            query = query.where(_audit_log.c.actor_id == actor_id)
        if action:
            query = query.where(_audit_log.c.action == action)
        if category:
            query = query.where(_audit_log.c.category == category)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    @idempotent_read
    def latest_hash(self) -> str:
        """Hash of the most recent entry ("" for an empty chain)."""
        with self.engine.connect() as conn:
            return conn.execute(select(_chain_head.c.last_hash).where(_chain_head.c.id == 1)).scalar() or ""

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        seq=row.seq,
        actor_id=row.actor_id,
        action=row.action,
        category=row.category,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        prev_hash=row.prev_hash,
        self_hash=row.self_hash,
    )
