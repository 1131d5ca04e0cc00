"""
auth/orchestrator.py -- Login/MFA/refresh/logout flow as an explicit state machine.

AuthService is the one entry point the API layer calls. It composes
AccountProtection, TokenIssuer and MfaEngine and writes the audit entry for
every transition.

States and legal transitions (_TRANSITIONS):

    UNAUTHENTICATED --credential ok, active, unlocked, origin ok--> PRIMARY_VERIFIED
    PRIMARY_VERIFIED --mfa off--> AUTHENTICATED
    PRIMARY_VERIFIED --mfa on--> MFA_REQUIRED          (provisional session)
    MFA_REQUIRED --code ok--> MFA_VERIFIED --> AUTHENTICATED
    MFA_REQUIRED --failures trip the lock--> REVOKED
    AUTHENTICATED --refresh--> REFRESHING --> AUTHENTICATED | REVOKED (reuse)
    AUTHENTICATED --logout--> LOGGED_OUT
    AUTHENTICATED --revoke--> REVOKED

  LOGGED_OUT and REVOKED are terminal. An attempt to take a transition that is
  not in the table raises InvalidTransition: that is a bug in this module,
  never a user error.

Security design decisions:
  Audit is authoritative [A1]: every transition is journaled before the
       result is returned. If the append fails, StoreUnavailable propagates
       and the operation fails with it.

  Latency padding: every failure returned from authenticate / verify_mfa /
       refresh is padded to AUTH_FAILURE_MIN_SECONDS, so the locked, unknown
       and wrong-password paths cannot be told apart by response time.

  Counter reset: a successful primary verification resets the failure
       counter even when MFA is still outstanding. MFA failures count against
       the same counter, so a password holder still trips the lock by
       guessing codes. The backoff level is only reset once the second
       factor is proven, so repeated MFA lockouts keep escalating.

  MFA management: disabling MFA or regenerating backup codes from a live
       session needs a fresh code, and a wrong one is a counted, journaled
       failure exactly like a wrong code at login. The failure that trips the
       lock also revokes the calling session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from audit.models import AuditAction, AuditCategory, AuditEvent
from audit.store import AuditTrail
from auth.mfa import MfaEngine, is_totp_format
from auth.models import (
    AuthFailure,
    DeviceContext,
    FailureReason,
    Identity,
    MfaChallenge,
    Session,
    SessionBundle,
)
from auth.protection import AccountProtection, lock_active
from auth.store import IdentityStore
from auth.tokens import KeyRing, TokenIssuer
from core.config import Settings
from core.crypto import SecretBox, SettingsKeyProvider
from core.db import from_iso, utcnow

logger = logging.getLogger("complianceauth.auth.orchestrator")

MFA_FAILURE_MESSAGE = "Invalid or expired verification code."


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PRIMARY_VERIFIED = "primary_verified"
    MFA_REQUIRED = "mfa_required"
    MFA_VERIFIED = "mfa_verified"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"
    REVOKED = "revoked"


_TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    AuthState.UNAUTHENTICATED: frozenset({AuthState.PRIMARY_VERIFIED}),
    AuthState.PRIMARY_VERIFIED: frozenset({AuthState.MFA_REQUIRED, AuthState.AUTHENTICATED}),
    AuthState.MFA_REQUIRED: frozenset({AuthState.MFA_VERIFIED, AuthState.REVOKED}),
    AuthState.MFA_VERIFIED: frozenset({AuthState.AUTHENTICATED}),
    AuthState.AUTHENTICATED: frozenset({AuthState.REFRESHING, AuthState.LOGGED_OUT, AuthState.REVOKED}),
    AuthState.REFRESHING: frozenset({AuthState.AUTHENTICATED, AuthState.REVOKED}),
    AuthState.LOGGED_OUT: frozenset(),
    AuthState.REVOKED: frozenset(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: AuthState, target: AuthState) -> None:
        super().__init__(f"Illegal auth transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: AuthState, target: AuthState) -> bool:
    return target in _TRANSITIONS[current]


class AuthFlow:
    """Tracks one request's walk through the table. Not persisted."""

    def __init__(self, start: AuthState = AuthState.UNAUTHENTICATED) -> None:
        self.state = start
        self.history = [start]

    def advance(self, target: AuthState) -> AuthState:
        if not can_transition(self.state, target):
            raise InvalidTransition(self.state, target)
        self.state = target
        self.history.append(target)
        return target

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    """Authentication orchestrator.

    Usage:
        service = AuthService(store, trail, settings)
        result = service.authenticate("alice", "pw", DeviceContext(ip_address="10.0.0.5"))
        if isinstance(result, MfaChallenge):
            result = service.verify_mfa(result.session_id, "123456")
        if isinstance(result, SessionBundle):
            service.logout(result.session_id)
    """

    def __init__(
        self,
        store: IdentityStore,
        trail: AuditTrail,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        box: SecretBox | None = None,
        key_ring: KeyRing | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.trail = trail
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self.protection = AccountProtection(store, trail, settings, clock)
        self.issuer = TokenIssuer(store, settings, clock, key_ring)
        self.mfa = MfaEngine(store, box or SecretBox(SettingsKeyProvider(settings)), trail, settings, clock)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identifier: str,
        secret: str,
        context: DeviceContext | None = None,
    ) -> SessionBundle | MfaChallenge | AuthFailure:
        started = time.monotonic()
        context = context or DeviceContext()
        flow = AuthFlow()

        result = self.protection.verify_credential(identifier, secret)
        if isinstance(result, AuthFailure):
            return self._login_failed(started, identifier, result, context)
        identity = result

        if not self.protection.origin_allowed(identity, context.ip_address):
            logger.warning("Login for identity %d refused from origin %s", identity.id, context.ip_address)
            self._record(
                AuditAction.ORIGIN_DENIED,
                AuditCategory.SECURITY,
                identity.id,
                context,
                actor_id=identity.id,
            )
            return self._pad(started, AuthFailure(FailureReason.ORIGIN_NOT_ALLOWED, identity_id=identity.id))

        flow.advance(AuthState.PRIMARY_VERIFIED)
        self.protection.record_success(identity.id, reset_backoff=not identity.mfa_enabled)

        if identity.mfa_enabled:
            flow.advance(AuthState.MFA_REQUIRED)
            challenge = self.issuer.begin_provisional(identity, context)
            self._record(
                AuditAction.MFA_CHALLENGE_ISSUED,
                AuditCategory.AUTH,
                identity.id,
                context,
                actor_id=identity.id,
                session=challenge.session_id[:8],
            )
            return challenge

        flow.advance(AuthState.AUTHENTICATED)
        bundle = self.issuer.issue(identity, context)
        bundle.require_password_change = self.protection.is_password_expired(identity)
        self._record(
            AuditAction.LOGIN_SUCCESS,
            AuditCategory.AUTH,
            identity.id,
            context,
            actor_id=identity.id,
            session=bundle.session_id[:8],
            mfa=False,
        )
        return bundle

    def _login_failed(
        self,
        started: float,
        identifier: str,
        failure: AuthFailure,
        context: DeviceContext,
    ) -> AuthFailure:
        # Only a wrong secret is counted. A locked account is already locked
        # and a correct secret on an inactive account is not a guess.
        if failure.reason is FailureReason.INVALID_CREDENTIAL:
            self.protection.record_failure(identifier)
        logger.info("Login failed for %r: %s", identifier, failure.reason.value)
        self._record(
            AuditAction.LOGIN_FAILURE,
            AuditCategory.AUTH,
            failure.identity_id,
            context,
            identifier=identifier,
            reason=failure.reason.value,
        )
        return self._pad(started, failure)

    # ------------------------------------------------------------------
    # MFA step
    # ------------------------------------------------------------------

    def verify_mfa(
        self,
        session_id: str,
        code: str,
        context: DeviceContext | None = None,
    ) -> SessionBundle | AuthFailure:
        """Complete a provisional session with a TOTP or backup code."""
        started = time.monotonic()
        context = context or DeviceContext()
        session = self.issuer.get_session(session_id)
        now = self._clock()
        expires = from_iso(session.challenge_expires_at) if session else None
        if session is None or session.revoked or not session.mfa_pending or expires is None or expires <= now:
            return self._pad(started, self._mfa_failure(None, session_id, "challenge_invalid"))

        identity = self.store.get_by_id(session.identity_id)
        if identity is None or not identity.is_active or lock_active(identity, now):
            self.issuer.revoke(session_id, "identity_unavailable")
            return self._pad(
                started,
                self._mfa_failure(session.identity_id, session_id, "identity_unavailable"),
            )

        flow = AuthFlow(AuthState.MFA_REQUIRED)
        method = "totp" if is_totp_format(code) else "backup_code"
        ok = self.mfa.verify(identity, code) if method == "totp" else self.mfa.consume_backup_code(identity, code)
        if not ok:
            self._record(
                AuditAction.MFA_CHALLENGE_FAILED,
                AuditCategory.SECURITY,
                identity.id,
                context,
                actor_id=identity.id,
                session=session_id[:8],
                method=method,
            )
            if self.protection.record_failure(identity.username):
                flow.advance(AuthState.REVOKED)
                self.issuer.revoke(session_id, "mfa_lockout")
                self._record(
                    AuditAction.SESSION_REVOKED,
                    AuditCategory.SECURITY,
                    identity.id,
                    context,
                    session=session_id[:8],
                    reason="mfa_lockout",
                )
            return self._pad(started, self._mfa_failure(identity.id, session_id, "code_rejected"))

        flow.advance(AuthState.MFA_VERIFIED)
        bundle = self.issuer.complete_mfa(session_id, identity)
        if bundle is None:
            # Another request completed or revoked the challenge first.
            return self._pad(started, self._mfa_failure(identity.id, session_id, "challenge_consumed"))
        flow.advance(AuthState.AUTHENTICATED)
        self.protection.record_success(identity.id)
        bundle.require_password_change = self.protection.is_password_expired(identity)
        self._record(
            AuditAction.MFA_VERIFIED,
            AuditCategory.AUTH,
            identity.id,
            context,
            actor_id=identity.id,
            session=session_id[:8],
            method=method,
        )
        self._record(
            AuditAction.LOGIN_SUCCESS,
            AuditCategory.AUTH,
            identity.id,
            context,
            actor_id=identity.id,
            session=session_id[:8],
            mfa=True,
        )
        return bundle

    # ------------------------------------------------------------------
    # MFA management from an authenticated session
    # ------------------------------------------------------------------

    def disable_mfa(
        self,
        identity: Identity,
        code: str,
        session_id: str | None = None,
        context: DeviceContext | None = None,
    ) -> bool:
        """Turn MFA off with a fresh TOTP or backup code. Wrong codes are counted."""
        if self.mfa.disable(identity, code):
            return True
        self._management_failed(identity, code, "disable", session_id, context)
        return False

    def regenerate_backup_codes(
        self,
        identity: Identity,
        code: str,
        session_id: str | None = None,
        context: DeviceContext | None = None,
    ) -> list[str] | None:
        """Replace the backup codes with a fresh TOTP code. Wrong codes are counted."""
        codes = self.mfa.regenerate_backup_codes(identity, code)
        if codes is None:
            self._management_failed(identity, code, "regenerate_backup_codes", session_id, context)
        return codes

    def _management_failed(
        self,
        identity: Identity,
        code: str,
        purpose: str,
        session_id: str | None,
        context: DeviceContext | None,
    ) -> None:
        if not identity.mfa_enabled:
            # Nothing to guess against.
            return
        session = (session_id or "")[:8]
        self._record(
            AuditAction.MFA_CHALLENGE_FAILED,
            AuditCategory.SECURITY,
            identity.id,
            context,
            actor_id=identity.id,
            session=session,
            method="totp" if is_totp_format(code) else "backup_code",
            purpose=purpose,
        )
        if not self.protection.record_failure(identity.username):
            return
        logger.warning("MFA %s guesses locked identity %d", purpose, identity.id)
        if session_id is not None and self.issuer.revoke(session_id, "mfa_lockout"):
            self._record(
                AuditAction.SESSION_REVOKED,
                AuditCategory.SECURITY,
                identity.id,
                context,
                session=session,
                reason="mfa_lockout",
            )

    @staticmethod
    def _mfa_failure(identity_id: int | None, session_id: str, detail: str) -> AuthFailure:
        return AuthFailure(
            FailureReason.MFA_INVALID,
            message=MFA_FAILURE_MESSAGE,
            identity_id=identity_id,
            session_id=session_id,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, context: DeviceContext | None = None) -> SessionBundle | AuthFailure:
        started = time.monotonic()
        context = context or DeviceContext()
        flow = AuthFlow(AuthState.AUTHENTICATED)
        flow.advance(AuthState.REFRESHING)

        result = self.issuer.refresh(refresh_token)
        if isinstance(result, AuthFailure):
            if result.detail == "reused":
                flow.advance(AuthState.REVOKED)
                self._record(
                    AuditAction.REFRESH_TOKEN_REUSE,
                    AuditCategory.SECURITY,
                    result.identity_id,
                    context,
                    session=(result.session_id or "")[:8],
                )
                self._record(
                    AuditAction.SESSION_REVOKED,
                    AuditCategory.SECURITY,
                    result.identity_id,
                    context,
                    session=(result.session_id or "")[:8],
                    reason="refresh_reuse",
                )
            else:
                self._record(
                    AuditAction.REFRESH_FAILURE,
                    AuditCategory.AUTH,
                    result.identity_id,
                    context,
                    reason=result.detail,
                )
            return self._pad(started, result)

        flow.advance(AuthState.AUTHENTICATED)
        identity = self.store.get_by_id(result.identity_id)
        if identity is not None:
            result.require_password_change = self.protection.is_password_expired(identity)
        self._record(
            AuditAction.TOKEN_REFRESHED,
            AuditCategory.AUTH,
            result.identity_id,
            context,
            actor_id=result.identity_id,
            session=result.session_id[:8],
        )
        return result

    # ------------------------------------------------------------------
    # Logout and revocation
    # ------------------------------------------------------------------

    def logout(self, session_id: str, context: DeviceContext | None = None) -> bool:
        session = self.issuer.get_session(session_id)
        if session is None:
            return False
        flow = AuthFlow(AuthState.AUTHENTICATED)
        if not self.issuer.revoke(session_id, "logout"):
            return False
        flow.advance(AuthState.LOGGED_OUT)
        self._record(
            AuditAction.LOGOUT,
            AuditCategory.AUTH,
            session.identity_id,
            context,
            actor_id=session.identity_id,
            session=session_id[:8],
        )
        return True

    def logout_all(self, identity_id: int, context: DeviceContext | None = None) -> int:
        """Revoke every session of the identity. Returns how many were live."""
        count = self.issuer.revoke_all(identity_id, "logout_all")
        self._record(
            AuditAction.LOGOUT_ALL,
            AuditCategory.AUTH,
            identity_id,
            context,
            actor_id=identity_id,
            sessions=count,
        )
        return count

    def revoke_session(
        self,
        identity_id: int,
        session_id: str,
        actor_id: int | None = None,
        context: DeviceContext | None = None,
    ) -> bool:
        """Revoke one of `identity_id`'s own sessions. False if not theirs or already gone."""
        session = self.issuer.get_session(session_id)
        if session is None or session.identity_id != identity_id:
            return False
        if not self.issuer.revoke(session_id, "revoked"):
            return False
        self._record(
            AuditAction.SESSION_REVOKED,
            AuditCategory.SECURITY,
            identity_id,
            context,
            actor_id=actor_id if actor_id is not None else identity_id,
            session=session_id[:8],
            reason="revoked",
        )
        return True

    def list_sessions(self, identity_id: int) -> list[Session]:
        return self.issuer.list_sessions(identity_id)

    def audit_append(self, event: AuditEvent) -> None:
        """Journal an event on behalf of another part of the application."""
        self.trail.append(event)

    # ------------------------------------------------------------------
    # Credential rotation and admin operations
    # ------------------------------------------------------------------

    def change_password(
        self,
        identity_id: int,
        current: str,
        new: str,
        keep_session_id: str | None = None,
    ) -> list[str]:
        """Self-service change. On success every other session is revoked."""
        problems = self.protection.change_password(identity_id, current, new)
        if problems:
            return problems
        count = self.issuer.revoke_all(identity_id, "password_changed", except_session_id=keep_session_id)
        if count:
            self._record(
                AuditAction.SESSION_REVOKED,
                AuditCategory.SECURITY,
                identity_id,
                None,
                actor_id=identity_id,
                sessions=count,
                reason="password_changed",
            )
        return []

    def force_password_reset(self, identity_id: int, actor_id: int | None) -> bool:
        """Set must-change and end every session of the identity."""
        if not self.protection.force_password_reset(identity_id, actor_id):
            return False
        count = self.issuer.revoke_all(identity_id, "password_reset_forced")
        self._record(
            AuditAction.SESSION_REVOKED,
            AuditCategory.ADMIN,
            identity_id,
            None,
            actor_id=actor_id,
            sessions=count,
            reason="password_reset_forced",
        )
        return True

    def unlock(self, identity_id: int, actor_id: int | None) -> bool:
        return self.protection.unlock(identity_id, actor_id)

    def create_identity(self, username: str, password: str, actor_id: int | None = None, **attributes) -> Identity:
        """Create an account (PasswordPolicyError / IntegrityError propagate)."""
        identity_id = self.protection.create_identity(username, password, actor_id=actor_id, **attributes)
        return self.store.get_by_id(identity_id)

    def update_identity(self, identity_id: int, actor_id: int | None, **fields) -> Identity | None:
        """Admin edit of role/status/allowed_origins/must_change_password.

        Moving an identity out of `active` revokes its sessions at once.
        """
        if not self.store.update_identity(identity_id, **fields):
            return None
        self._record(
            AuditAction.IDENTITY_UPDATED,
            AuditCategory.ADMIN,
            identity_id,
            None,
            actor_id=actor_id,
            fields=sorted(fields),
        )
        identity = self.store.get_by_id(identity_id)
        if identity is not None and not identity.is_active:
            count = self.issuer.revoke_all(identity_id, "identity_deactivated")
            if count:
                self._record(
                    AuditAction.SESSION_REVOKED,
                    AuditCategory.ADMIN,
                    identity_id,
                    None,
                    actor_id=actor_id,
                    sessions=count,
                    reason="identity_deactivated",
                )
        return identity

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pad(self, started: float, failure: AuthFailure) -> AuthFailure:
        remaining = self.settings.auth_failure_min_seconds - (time.monotonic() - started)
        if remaining > 0:
            self._sleep(remaining)
        return failure

    def _record(
        self,
        action: AuditAction,
        category: AuditCategory,
        identity_id: int | None,
        context: DeviceContext | None,
        actor_id: int | None = None,
        **details,
    ) -> None:
        self.trail.append(
            AuditEvent(
                action=action.value,
                category=category.value,
                actor_id=actor_id,
                entity_type="identity" if identity_id is not None else None,
                entity_id=str(identity_id) if identity_id is not None else None,
                details=details,
                ip_address=context.ip_address if context else None,
                user_agent=context.user_agent if context else None,
            )
        )
