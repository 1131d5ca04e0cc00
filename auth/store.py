"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as audit/store.py).
IdentityStore is the repository; _row_to_identity / _row_to_session are the
mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity [T1]:
  Every operation that must not interleave with a concurrent request is one
  engine.begin() transaction built from conditional UPDATEs, so correctness
  comes from the database, not from process-local locks:
    register_failure()  -- increment + threshold lock in one transaction; the
                           lock UPDATE is conditional on the counter, so two
                           racing failures cannot both stay under threshold.
    rotate_refresh()    -- UPDATE ... WHERE refresh_jti = presented; zero rows
                           with a stale id means reuse, handled in the same
                           transaction (session revoked, tokens blacklisted).
    activate_session()  -- a provisional session completes MFA at most once.
    consume_backup_code -- UPDATE ... WHERE used_at IS NULL; at-most-once.
    advance_mfa_step()  -- UPDATE ... WHERE last step < matched step.

  sessions.refresh_jti is UNIQUE: at most one session per refresh token.

Retry policy: reads are wrapped in core.db.idempotent_read (bounded retry);
writes in core.db.guarded_write (no retry) [R1].

DB path: auth/complianceauth_auth.db by default.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import FailureRecord, Identity, RotationOutcome, Session
from core.db import guarded_write, idempotent_read, make_engine, to_iso

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'complianceauth_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("failure_window_started_at", String(32)),
    Column("locked_until", String(32)),  # NULL with status=locked = admin lock, no expiry
    Column("locked_reason", String(32)),
    Column("lockout_count", Integer, nullable=False, server_default="0"),
    Column("password_changed_at", String(32)),
    Column("password_expires_at", String(32)),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret_encrypted", Text),  # Fernet token
    Column("mfa_pending_secret_encrypted", Text),  # enrollment not yet confirmed
    Column("mfa_last_step", Integer),
    Column("allowed_origins", Text),  # JSON list of IPs / CIDRs
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_backup_codes = Table(
    "mfa_backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("used_at", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("last_seen_at", String(32)),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("device_fingerprint", String(128)),
    Column("access_jti", String(64)),
    Column("access_expires_at", String(32)),
    Column("refresh_jti", String(64), unique=True),
    Column("refresh_expires_at", String(32)),
    Column("mfa_required", Integer, nullable=False, server_default="0"),
    Column("mfa_verified", Integer, nullable=False, server_default="0"),
    Column("challenge_expires_at", String(32)),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(32)),
)

_token_blacklist = Table(
    "token_blacklist",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("token_type", String(16), nullable=False),
    Column("session_id", String(64)),
    Column("reason", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("retained_until", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for identities, credentials, MFA material, sessions and the blacklist.

    Usage:
        store = IdentityStore()
        store.create_identity(Identity(username="alice", hashed_password=hash_secret("...")), utcnow())
        identity = store.get_by_username("alice")
        store.close()
    """

    # Columns an admin may change through update_identity(). Validated before
    # any SQL is built so callers cannot smuggle in counter or hash columns.
    _ADMIN_MUTABLE: set = {"role", "status", "allowed_origins", "must_change_password"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    @idempotent_read
    def has_identities(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (result or 0) > 0

    @guarded_write
    def create_identity(self, identity: Identity, now: datetime) -> int:
        """Insert a new identity and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    username=identity.username,
                    hashed_password=identity.hashed_password,
                    role=identity.role,
                    status=identity.status,
                    password_changed_at=identity.password_changed_at or to_iso(now),
                    password_expires_at=identity.password_expires_at,
                    must_change_password=1 if identity.must_change_password else 0,
                    allowed_origins=json.dumps(identity.allowed_origins or []),
                    created_at=to_iso(now),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    @idempotent_read
    def get_by_username(self, username: str) -> Identity | None:
        """Look up an identity by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.username == username)).fetchone()
        return _row_to_identity(row) if row is not None else None

    @idempotent_read
    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    @idempotent_read
    def list_identities(self) -> list[Identity]:
        with self.engine.connect() as conn:
            rows = conn.execute(_identities.select().order_by(_identities.c.username)).fetchall()
        return [_row_to_identity(r) for r in rows]

    @guarded_write
    def update_identity(self, identity_id: int, **fields) -> bool:
        """Update admin-mutable fields. Returns False if the identity does not exist.

        Unknown keys raise ValueError rather than being silently ignored.
        """
        unknown = set(fields) - self._ADMIN_MUTABLE
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if "allowed_origins" in fields:
            fields["allowed_origins"] = json.dumps(fields["allowed_origins"] or [])
        if "must_change_password" in fields:
            fields["must_change_password"] = 1 if fields["must_change_password"] else 0
        if fields.get("status") == "active":
            # Reactivating clears any lock state along with it.
            fields.update(locked_until=None, locked_reason=None, failed_attempts=0, failure_window_started_at=None)
        with self.engine.connect() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Failure counter and lockout [T1]
    # ------------------------------------------------------------------

    @guarded_write
    def register_failure(
        self,
        identity_id: int,
        now: datetime,
        window: timedelta,
        threshold: int,
        lock_duration: Callable[[int], timedelta],
    ) -> FailureRecord:
        """Count one failed attempt and lock the identity if it reaches threshold.

        A failure whose window started before now - window restarts the window
        at 1. lock_duration receives the identity's previous lockout count
        (for progressive backoff) and returns how long this lock lasts.
        """
        now_iso = to_iso(now)
        cutoff = to_iso(now - window)
        window_expired = (_identities.c.failure_window_started_at.is_(None)) | (
            _identities.c.failure_window_started_at < cutoff
        )
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(
                    failed_attempts=case((window_expired, 1), else_=_identities.c.failed_attempts + 1),
                    failure_window_started_at=case(
                        (window_expired, now_iso), else_=_identities.c.failure_window_started_at
                    ),
                )
            )
            row = conn.execute(
                select(_identities.c.failed_attempts, _identities.c.lockout_count).where(
                    _identities.c.id == identity_id
                )
            ).fetchone()
            if row is None:
                return FailureRecord(failed_attempts=0)
            if row.failed_attempts < threshold:
                return FailureRecord(failed_attempts=row.failed_attempts)
            locked_until = to_iso(now + lock_duration(row.lockout_count))
            tripped = conn.execute(
                _identities.update()
                .where(
                    (_identities.c.id == identity_id)
                    & (_identities.c.status == "active")
                    & (_identities.c.failed_attempts >= threshold)
                )
                .values(
                    status="locked",
                    locked_until=locked_until,
                    locked_reason="failed_attempts",
                    lockout_count=_identities.c.lockout_count + 1,
                )
            )
        if tripped.rowcount == 1:
            return FailureRecord(failed_attempts=row.failed_attempts, locked=True, locked_until=locked_until)
        return FailureRecord(failed_attempts=row.failed_attempts)

    @guarded_write
    def clear_expired_lock(self, identity_id: int, now: datetime) -> bool:
        """Return a timed-out locked identity to active. True if this call cleared it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(
                    (_identities.c.id == identity_id)
                    & (_identities.c.status == "locked")
                    & (_identities.c.locked_until.is_not(None))
                    & (_identities.c.locked_until <= to_iso(now))
                )
                .values(**_UNLOCKED)
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def unlock(self, identity_id: int) -> bool:
        """Admin reset of a locked identity, regardless of lock expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.status == "locked"))
                .values(**_UNLOCKED)
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def register_success(self, identity_id: int, now: datetime, reset_backoff: bool = True) -> None:
        """Reset the failure counter and stamp last_login.

        The backoff level (lockout_count) is reset too unless `reset_backoff`
        is False, which is how a login still waiting on its second factor
        keeps its escalation.
        """
        values = {"failed_attempts": 0, "failure_window_started_at": None, "last_login": to_iso(now)}
        if reset_backoff:
            values["lockout_count"] = 0
        with self.engine.connect() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**values))
            conn.commit()

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @idempotent_read
    def get_password_history(self, identity_id: int, limit: int) -> list[str]:
        """Return up to `limit` previous hashes, newest first."""
        if limit <= 0:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_password_history.c.hashed_password)
                .where(_password_history.c.identity_id == identity_id)
                .order_by(_password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [r.hashed_password for r in rows]

    @guarded_write
    def set_password(
        self,
        identity_id: int,
        new_hash: str,
        now: datetime,
        expires_at: datetime | None,
        must_change: bool,
        history_size: int,
    ) -> bool:
        """Replace the credential hash, archiving the old one in password_history.

        History beyond history_size entries is deleted in the same transaction.
        """
        with self.engine.begin() as conn:
            current = conn.execute(
                select(_identities.c.hashed_password).where(_identities.c.id == identity_id)
            ).fetchone()
            if current is None:
                return False
            if history_size > 0 and current.hashed_password:
                conn.execute(
                    _password_history.insert().values(
                        identity_id=identity_id,
                        hashed_password=current.hashed_password,
                        created_at=to_iso(now),
                    )
                )
            keep = select(_password_history.c.id).where(_password_history.c.identity_id == identity_id)
            keep = keep.order_by(_password_history.c.id.desc()).limit(max(history_size, 0))
            keep_ids = [r.id for r in conn.execute(keep).fetchall()]
            conn.execute(
                _password_history.delete().where(
                    (_password_history.c.identity_id == identity_id) & (_password_history.c.id.not_in(keep_ids))
                )
            )
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(
                    hashed_password=new_hash,
                    password_changed_at=to_iso(now),
                    password_expires_at=to_iso(expires_at) if expires_at else None,
                    must_change_password=1 if must_change else 0,
                )
            )
        return True

    # ------------------------------------------------------------------
    # MFA material
    # ------------------------------------------------------------------

    @guarded_write
    def set_pending_mfa_secret(self, identity_id: int, encrypted: str | None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(mfa_pending_secret_encrypted=encrypted)
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def activate_mfa(self, identity_id: int, expected_pending: str, step: int, code_hashes: list[str], now: datetime) -> bool:
        """Promote the pending secret to active and replace the backup codes.

        Conditional on the pending secret still being the one the caller
        verified against, so two confirmations cannot interleave.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where(
                    (_identities.c.id == identity_id)
                    & (_identities.c.mfa_pending_secret_encrypted == expected_pending)
                )
                .values(
                    mfa_enabled=1,
                    mfa_secret_encrypted=expected_pending,
                    mfa_pending_secret_encrypted=None,
                    mfa_last_step=step,
                )
            )
            if result.rowcount != 1:
                return False
            _replace_codes(conn, identity_id, code_hashes, now)
        return True

    @guarded_write
    def advance_mfa_step(self, identity_id: int, step: int) -> bool:
        """Record `step` as the last accepted TOTP step if it is newer. False = replay."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(
                    (_identities.c.id == identity_id)
                    & ((_identities.c.mfa_last_step.is_(None)) | (_identities.c.mfa_last_step < step))
                )
                .values(mfa_last_step=step)
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def consume_backup_code(self, identity_id: int, code_hash: str, now: datetime) -> bool:
        """Mark a backup code used. True only for the single call that flips it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _backup_codes.update()
                .where(
                    (_backup_codes.c.identity_id == identity_id)
                    & (_backup_codes.c.code_hash == code_hash)
                    & (_backup_codes.c.used_at.is_(None))
                )
                .values(used_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def replace_backup_codes(self, identity_id: int, code_hashes: list[str], now: datetime) -> None:
        with self.engine.begin() as conn:
            _replace_codes(conn, identity_id, code_hashes, now)

    @idempotent_read
    def count_unused_backup_codes(self, identity_id: int) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_backup_codes)
                    .where((_backup_codes.c.identity_id == identity_id) & (_backup_codes.c.used_at.is_(None)))
                ).scalar()
                or 0
            )

    @guarded_write
    def disable_mfa(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(
                    mfa_enabled=0,
                    mfa_secret_encrypted=None,
                    mfa_pending_secret_encrypted=None,
                    mfa_last_step=None,
                )
            )
            conn.execute(_backup_codes.delete().where(_backup_codes.c.identity_id == identity_id))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @guarded_write
    def create_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    identity_id=session.identity_id,
                    created_at=session.created_at,
                    last_seen_at=session.created_at,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_fingerprint=session.device_fingerprint,
                    access_jti=session.access_jti,
                    access_expires_at=session.access_expires_at,
                    refresh_jti=session.refresh_jti,
                    refresh_expires_at=session.refresh_expires_at,
                    mfa_required=1 if session.mfa_required else 0,
                    mfa_verified=1 if session.mfa_verified else 0,
                    challenge_expires_at=session.challenge_expires_at,
                )
            )
            conn.commit()

    @idempotent_read
    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    @idempotent_read
    def list_sessions(self, identity_id: int, now: datetime) -> list[Session]:
        """Non-revoked, unexpired sessions for an identity, newest first."""
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.identity_id == identity_id)
                    & (_sessions.c.revoked == 0)
                    & (
                        (_sessions.c.refresh_expires_at > now_iso)
                        | ((_sessions.c.refresh_jti.is_(None)) & (_sessions.c.challenge_expires_at > now_iso))
                    )
                )
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    @guarded_write
    def activate_session(
        self,
        session_id: str,
        access_jti: str,
        access_expires_at: str,
        refresh_jti: str,
        refresh_expires_at: str,
        now: datetime,
    ) -> bool:
        """Attach first tokens to a provisional session whose MFA just succeeded.

        Conditional on the session still being pending, unrevoked and inside
        its challenge window, so a challenge completes at most once.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.mfa_required == 1)
                    & (_sessions.c.mfa_verified == 0)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.challenge_expires_at > to_iso(now))
                )
                .values(
                    mfa_verified=1,
                    access_jti=access_jti,
                    access_expires_at=access_expires_at,
                    refresh_jti=refresh_jti,
                    refresh_expires_at=refresh_expires_at,
                    last_seen_at=to_iso(now),
                )
            )
            conn.commit()
        return result.rowcount > 0

    @guarded_write
    def rotate_refresh(
        self,
        session_id: str,
        presented_jti: str,
        access_jti: str,
        access_expires_at: str,
        refresh_jti: str,
        refresh_expires_at: str,
        now: datetime,
    ) -> RotationOutcome:
        """Validate-and-rotate a refresh token as one atomic unit [T1].

        ROTATED: presented id was current; new ids stored, old ids blacklisted.
        REUSED:  presented id was rotated earlier; the session is revoked and
                 its current tokens blacklisted in this same transaction.
        """
        now_iso = to_iso(now)
        with self.engine.begin() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.id == session_id).with_for_update()
            ).fetchone()
            if row is None:
                return RotationOutcome.NOT_FOUND
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.refresh_jti == presented_jti)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.refresh_expires_at > now_iso)
                )
                .values(
                    access_jti=access_jti,
                    access_expires_at=access_expires_at,
                    refresh_jti=refresh_jti,
                    refresh_expires_at=refresh_expires_at,
                    last_seen_at=now_iso,
                )
            )
            if result.rowcount == 1:
                _blacklist(conn, presented_jti, "refresh", session_id, row.refresh_expires_at, "rotated", now_iso)
                _blacklist(conn, row.access_jti, "access", session_id, row.access_expires_at, "rotated", now_iso)
                return RotationOutcome.ROTATED

            # Re-read: a concurrent rotation may have committed since the first SELECT.
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
            if row.revoked:
                return RotationOutcome.REVOKED
            if row.refresh_jti != presented_jti:
                _blacklist(conn, presented_jti, "refresh", session_id, row.refresh_expires_at, "reused", now_iso)
                _revoke_row(conn, row, "refresh_reuse", now_iso)
                return RotationOutcome.REUSED
            return RotationOutcome.EXPIRED

    @guarded_write
    def revoke_session(self, session_id: str, reason: str, now: datetime) -> bool:
        """Revoke one session and blacklist its outstanding tokens.

        Returns False if the session does not exist or was already revoked.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.id == session_id).with_for_update()
            ).fetchone()
            if row is None or row.revoked:
                return False
            return _revoke_row(conn, row, reason, to_iso(now))

    @guarded_write
    def revoke_all_sessions(
        self,
        identity_id: int,
        reason: str,
        now: datetime,
        except_session_id: str | None = None,
    ) -> int:
        """Revoke every non-revoked session of an identity. Returns how many."""
        now_iso = to_iso(now)
        query = _sessions.select().where((_sessions.c.identity_id == identity_id) & (_sessions.c.revoked == 0))
        if except_session_id is not None:
            query = query.where(_sessions.c.id != except_session_id)
        with self.engine.begin() as conn:
            rows = conn.execute(query.with_for_update()).fetchall()
            return sum(1 for row in rows if _revoke_row(conn, row, reason, now_iso))

    @guarded_write
    def touch_session(self, session_id: str, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_seen_at=to_iso(now)))
            conn.commit()

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    @idempotent_read
    def is_blacklisted(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_token_blacklist.c.jti).where(_token_blacklist.c.jti == jti)).fetchone()
        return row is not None

    @guarded_write
    def add_to_blacklist(
        self,
        jti: str,
        token_type: str,
        retained_until: str,
        now: datetime,
        session_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        with self.engine.begin() as conn:
            _blacklist(conn, jti, token_type, session_id, retained_until, reason, to_iso(now))

    @guarded_write
    def purge_expired_blacklist(self, now: datetime) -> int:
        """Delete entries whose token would have expired anyway."""
        with self.engine.connect() as conn:
            result = conn.execute(_token_blacklist.delete().where(_token_blacklist.c.retained_until < to_iso(now)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Transaction helpers (caller owns the transaction)
# ---------------------------------------------------------------------------

_UNLOCKED = {
    "status": "active",
    "failed_attempts": 0,
    "failure_window_started_at": None,
    "locked_until": None,
    "locked_reason": None,
}


def _blacklist(
    conn: Connection,
    jti: str | None,
    token_type: str,
    session_id: str | None,
    retained_until: str | None,
    reason: str | None,
    now_iso: str,
) -> None:
    if not jti:
        return
    exists = conn.execute(select(_token_blacklist.c.jti).where(_token_blacklist.c.jti == jti)).fetchone()
    if exists is not None:
        return
    conn.execute(
        _token_blacklist.insert().values(
            jti=jti,
            token_type=token_type,
            session_id=session_id,
            reason=reason,
            created_at=now_iso,
            retained_until=retained_until or now_iso,
        )
    )


def _revoke_row(conn: Connection, row, reason: str, now_iso: str) -> bool:
    result = conn.execute(
        _sessions.update()
        .where((_sessions.c.id == row.id) & (_sessions.c.revoked == 0))
        .values(revoked=1, revoked_at=now_iso, revoked_reason=reason)
    )
    if result.rowcount != 1:
        return False
    _blacklist(conn, row.access_jti, "access", row.id, row.access_expires_at, reason, now_iso)
    _blacklist(conn, row.refresh_jti, "refresh", row.id, row.refresh_expires_at, reason, now_iso)
    return True


def _replace_codes(conn: Connection, identity_id: int, code_hashes: list[str], now: datetime) -> None:
    conn.execute(_backup_codes.delete().where(_backup_codes.c.identity_id == identity_id))
    now_iso = to_iso(now)
    for code_hash in code_hashes:
        conn.execute(_backup_codes.insert().values(identity_id=identity_id, code_hash=code_hash, created_at=now_iso))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=row.role,
        status=row.status,
        failed_attempts=row.failed_attempts,
        failure_window_started_at=row.failure_window_started_at,
        locked_until=row.locked_until,
        locked_reason=row.locked_reason,
        lockout_count=row.lockout_count,
        password_changed_at=row.password_changed_at,
        password_expires_at=row.password_expires_at,
        must_change_password=bool(row.must_change_password),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret_encrypted=row.mfa_secret_encrypted,
        mfa_pending_secret_encrypted=row.mfa_pending_secret_encrypted,
        mfa_last_step=row.mfa_last_step,
        allowed_origins=json.loads(row.allowed_origins) if row.allowed_origins else [],
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        created_at=row.created_at,
        last_seen_at=row.last_seen_at,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_fingerprint=row.device_fingerprint,
        access_jti=row.access_jti,
        access_expires_at=row.access_expires_at,
        refresh_jti=row.refresh_jti,
        refresh_expires_at=row.refresh_expires_at,
        mfa_required=bool(row.mfa_required),
        mfa_verified=bool(row.mfa_verified),
        challenge_expires_at=row.challenge_expires_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
    )
