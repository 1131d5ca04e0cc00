"""
auth/protection.py -- Credential verification, brute-force lockout and password policy.

Security design decisions:
  Timing equalization [C1]: an unknown identifier still pays for one bcrypt
       comparison (against crypto.dummy_hash), so response time does not
       reveal whether the account exists.

  Lockout [L1]: failures are counted in the store with an atomic conditional
       update (IdentityStore.register_failure). Reaching LOCKOUT_THRESHOLD
       inside LOCKOUT_WINDOW_MINUTES locks the identity until an expiry
       timestamp. While the lock is in force, verify_credential() returns
       AccountLocked WITHOUT running bcrypt: there is nothing to learn from the
       comparison and skipping it keeps a locked account from acting as a
       hash oracle. An elapsed lock is cleared on the next attempt.

  Progressive backoff [L2]: lock duration is
       LOCKOUT_MINUTES * LOCKOUT_BACKOFF_MULTIPLIER ** previous_lockouts,
       capped at LOCKOUT_MAX_MINUTES. The default multiplier of 1.0 keeps
       every lock the same length. A completed login (second factor
       included when enrolled) resets the level.

  Generic failures: every AuthFailure produced here carries the same message.
       The reason goes to the audit trail, never to the caller.

  Password history [P1]: the last PASSWORD_HISTORY_SIZE hashes are kept in
       their own table. The audit trail never records hashes, so shrinking
       the history really does forget old credentials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from audit.models import AuditAction, AuditCategory, AuditEvent
from audit.store import AuditTrail
from auth.models import AccountStatus, AuthFailure, FailureReason, Identity
from auth.store import IdentityStore
from core import crypto
from core.config import Settings
from core.db import from_iso, to_iso, utcnow

logger = logging.getLogger("complianceauth.auth.protection")

_SYMBOL_RE = re.compile(r"[^A-Za-z0-9]")


class PasswordPolicyError(ValueError):
    """Raised by admin password operations when the new password is rejected."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = problems


def lock_active(identity: Identity, now: datetime) -> bool:
    """True while a lock is in force. Admin locks (no expiry) never lapse."""
    if identity.status != AccountStatus.locked.value:
        return False
    until = from_iso(identity.locked_until)
    return until is None or until > now


class AccountProtection:
    """Verifies secrets, tracks failures and enforces lockout and password policy.

    Usage:
        protection = AccountProtection(store, trail, settings)
        result = protection.verify_credential("alice", "correct horse")
        if isinstance(result, AuthFailure):
            protection.record_failure("alice")
        else:
            protection.record_success(result.id)
    """

    def __init__(
        self,
        store: IdentityStore,
        audit: AuditTrail,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Credential verification [C1][L1]
    # ------------------------------------------------------------------

    def verify_credential(self, identifier: str, secret: str) -> Identity | AuthFailure:
        identity = self._store.get_by_username(identifier)
        if identity is None or identity.hashed_password is None:
            crypto.verify_secret(secret, crypto.dummy_hash(self._settings.bcrypt_rounds))
            return AuthFailure(FailureReason.INVALID_CREDENTIAL)

        now = self._clock()
        if identity.status == AccountStatus.locked.value:
            if lock_active(identity, now):
                return AuthFailure(FailureReason.ACCOUNT_LOCKED, identity_id=identity.id)
            if self._store.clear_expired_lock(identity.id, now):
                logger.info("Lock expired for identity %d", identity.id)
                self._journal(
                    AuditAction.ACCOUNT_UNLOCKED,
                    AuditCategory.SECURITY,
                    identity.id,
                    actor_id=None,
                    reason="lock_expired",
                )
            identity = self._store.get_by_id(identity.id)

        if not crypto.verify_secret(secret, identity.hashed_password):
            return AuthFailure(FailureReason.INVALID_CREDENTIAL, identity_id=identity.id)
        if not identity.is_active:
            return AuthFailure(FailureReason.ACCOUNT_NOT_ACTIVE, identity_id=identity.id)
        return identity

    def record_failure(self, identifier: str) -> bool:
        """Count a failed attempt. Returns True if this failure locked the account.

        Unknown identifiers are a no-op (there is no row to lock). Not
        retried on store errors -- a replayed increment would double-count.
        """
        identity = self._store.get_by_username(identifier)
        if identity is None:
            return False
        now = self._clock()
        record = self._store.register_failure(
            identity.id,
            now,
            timedelta(minutes=self._settings.lockout_window_minutes),
            self._settings.lockout_threshold,
            self._lock_duration,
        )
        if record.locked:
            logger.warning(
                "Identity %d locked after %d failed attempts (until %s)",
                identity.id,
                record.failed_attempts,
                record.locked_until,
            )
            self._journal(
                AuditAction.ACCOUNT_LOCKED,
                AuditCategory.SECURITY,
                identity.id,
                actor_id=None,
                failed_attempts=record.failed_attempts,
                locked_until=record.locked_until,
            )
        return record.locked

    def record_success(self, identity_id: int, reset_backoff: bool = True) -> None:
        """Reset the failure counter. The backoff level [L2] is kept when `reset_backoff` is False."""
        self._store.register_success(identity_id, self._clock(), reset_backoff=reset_backoff)

    def _lock_duration(self, previous_lockouts: int) -> timedelta:
        """Lock length for the next lockout [L2]."""
        s = self._settings
        minutes = s.lockout_minutes * (s.lockout_backoff_multiplier**previous_lockouts)
        return timedelta(minutes=min(minutes, s.lockout_max_minutes))

    def unlock(self, identity_id: int, actor_id: int | None = None) -> bool:
        """Admin reset of a locked identity."""
        if not self._store.unlock(identity_id):
            return False
        logger.info("Identity %d unlocked by %s", identity_id, actor_id)
        self._journal(AuditAction.ACCOUNT_UNLOCKED, AuditCategory.ADMIN, identity_id, actor_id, reason="admin_reset")
        return True

    # ------------------------------------------------------------------
    # Origin allow-list
    # ------------------------------------------------------------------

    @staticmethod
    def origin_allowed(identity: Identity, ip: str | None) -> bool:
        """Empty allow-list admits every origin; entries are IPs or CIDR networks."""
        if not identity.allowed_origins:
            return True
        if not ip:
            return False
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        for entry in identity.allowed_origins:
            try:
                if "/" in entry:
                    if address in ipaddress.ip_network(entry, strict=False):
                        return True
                elif address == ipaddress.ip_address(entry):
                    return True
            except ValueError:
                logger.warning("Ignoring malformed allow-list entry %r on identity %s", entry, identity.id)
        return False

    # ------------------------------------------------------------------
    # Password policy [P1]
    # ------------------------------------------------------------------

    def hash_password(self, plain: str) -> str:
        return crypto.hash_secret(plain, self._settings.bcrypt_rounds)

    def validate_password_policy(self, password: str, username: str | None = None) -> list[str]:
        """Return human-readable problems; an empty list means acceptable."""
        s = self._settings
        problems: list[str] = []
        if len(password) < s.password_min_length:
            problems.append(f"Password must be at least {s.password_min_length} characters.")
        if s.password_require_uppercase and not any(c.isupper() for c in password):
            problems.append("Password must contain an uppercase letter.")
        if s.password_require_lowercase and not any(c.islower() for c in password):
            problems.append("Password must contain a lowercase letter.")
        if s.password_require_numbers and not any(c.isdigit() for c in password):
            problems.append("Password must contain a number.")
        if s.password_require_symbols and not _SYMBOL_RE.search(password):
            problems.append("Password must contain a symbol.")
        if username and username.lower() in password.lower():
            problems.append("Password must not contain the username.")
        return problems

    def is_password_expired(self, identity: Identity) -> bool:
        if identity.must_change_password:
            return True
        expires = from_iso(identity.password_expires_at)
        return expires is not None and expires <= self._clock()

    def _was_used_recently(self, identity: Identity, candidate: str) -> bool:
        previous = [identity.hashed_password] if identity.hashed_password else []
        previous += self._store.get_password_history(identity.id, self._settings.password_history_size)
        return any(crypto.verify_secret(candidate, h) for h in previous)

    def _expiry_from(self, now: datetime) -> datetime | None:
        days = self._settings.password_expiry_days
        return now + timedelta(days=days) if days > 0 else None

    def create_identity(
        self,
        username: str,
        password: str,
        role: str = "user",
        status: str = AccountStatus.active.value,
        allowed_origins: list[str] | None = None,
        must_change_password: bool = False,
        actor_id: int | None = None,
    ) -> int:
        """Create a local account. Raises PasswordPolicyError or IntegrityError (duplicate)."""
        problems = self.validate_password_policy(password, username)
        if problems:
            raise PasswordPolicyError(problems)
        now = self._clock()
        expiry = self._expiry_from(now)
        identity_id = self._store.create_identity(
            Identity(
                username=username,
                role=role,
                status=status,
                hashed_password=self.hash_password(password),
                password_expires_at=to_iso(expiry) if expiry else None,
                must_change_password=must_change_password,
                allowed_origins=allowed_origins or [],
            ),
            now,
        )
        self._journal(
            AuditAction.IDENTITY_CREATED, AuditCategory.ADMIN, identity_id, actor_id, username=username, role=role
        )
        return identity_id

    def change_password(self, identity_id: int, current: str, new: str) -> list[str]:
        """Self-service password change. Returns problems; empty list = changed.

        A wrong current password counts as a failed attempt, so a hijacked
        session cannot be used to guess it without tripping the lockout.
        """
        identity = self._store.get_by_id(identity_id)
        if identity is None or identity.hashed_password is None:
            return ["Identity not found."]
        if not crypto.verify_secret(current, identity.hashed_password):
            self.record_failure(identity.username)
            return ["Current password is incorrect."]
        problems = self.validate_password_policy(new, identity.username)
        if not problems and self._was_used_recently(identity, new):
            problems.append("Password was used recently. Choose a different one.")
        if problems:
            return problems
        now = self._clock()
        self._store.set_password(
            identity_id,
            self.hash_password(new),
            now,
            self._expiry_from(now),
            must_change=False,
            history_size=self._settings.password_history_size,
        )
        self._journal(AuditAction.PASSWORD_CHANGED, AuditCategory.SECURITY, identity_id, identity_id)
        return []

    def set_password(self, identity_id: int, new: str, actor_id: int | None, must_change: bool = True) -> bool:
        """Admin-assigned password. The user must change it at next login by default."""
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return False
        problems = self.validate_password_policy(new, identity.username)
        if problems:
            raise PasswordPolicyError(problems)
        now = self._clock()
        self._store.set_password(
            identity_id,
            self.hash_password(new),
            now,
            self._expiry_from(now),
            must_change=must_change,
            history_size=self._settings.password_history_size,
        )
        self._journal(AuditAction.PASSWORD_CHANGED, AuditCategory.ADMIN, identity_id, actor_id, assigned=True)
        return True

    def force_password_reset(self, identity_id: int, actor_id: int | None) -> bool:
        """Flag the identity so its next login must change the password."""
        if not self._store.update_identity(identity_id, must_change_password=True):
            return False
        self._journal(AuditAction.PASSWORD_RESET_FORCED, AuditCategory.ADMIN, identity_id, actor_id)
        return True

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _journal(
        self,
        action: AuditAction,
        category: AuditCategory,
        identity_id: int,
        actor_id: int | None,
        **details,
    ) -> None:
        self._audit.append(
            AuditEvent(
                action=action.value,
                category=category.value,
                actor_id=actor_id,
                entity_type="identity",
                entity_id=str(identity_id),
                details=details,
            )
        )
