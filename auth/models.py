"""
auth/models.py -- Domain dataclasses and result types for authentication.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only carry shape.

Result types vs exceptions [E1]:
  Credential, MFA and refresh failures are expected outcomes. They come back
  as AuthFailure values carrying a FailureReason so the orchestrator can
  decide on counter increments and audit writes with ordinary branching.
  Only transient store trouble is an exception (core.errors.StoreUnavailable).

  AuthFailure.message is the only text an unauthenticated caller ever sees,
  and it is the same generic sentence for unknown identifier, wrong secret,
  locked and inactive accounts. The reason is for the audit trail and logs.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

GENERIC_LOGIN_FAILURE = "Invalid username or password."


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    locked = "locked"
    pending = "pending"


class FailureReason(str, Enum):
    INVALID_CREDENTIAL = "InvalidCredential"  # unknown identifier or wrong secret
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_NOT_ACTIVE = "AccountNotActive"
    ORIGIN_NOT_ALLOWED = "OriginNotAllowed"
    MFA_REQUIRED = "MfaRequired"
    MFA_INVALID = "MfaInvalid"
    REFRESH_TOKEN_INVALID = "RefreshTokenInvalid"  # expired, revoked or reused
    SESSION_NOT_FOUND = "SessionNotFound"
    STORE_UNAVAILABLE = "StoreUnavailable"


@dataclass
class Identity:
    """A local account.

    allowed_origins holds exact IPs or CIDR networks; empty means any origin.
    mfa_secret_encrypted / mfa_pending_secret_encrypted are Fernet tokens --
    the plaintext seed only ever exists inside the MFA engine for the length
    of one call. mfa_last_step is the last TOTP time-step accepted, used to
    reject a code replayed within its step.
    """

    username: str
    role: str = "user"
    id: int | None = None
    hashed_password: str | None = None
    status: str = AccountStatus.active.value
    failed_attempts: int = 0
    failure_window_started_at: str | None = None
    locked_until: str | None = None
    locked_reason: str | None = None
    lockout_count: int = 0
    password_changed_at: str | None = None
    password_expires_at: str | None = None
    must_change_password: bool = False
    mfa_enabled: bool = False
    mfa_secret_encrypted: str | None = None
    mfa_pending_secret_encrypted: str | None = None
    mfa_last_step: int | None = None
    allowed_origins: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_login: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.active.value


@dataclass
class DeviceContext:
    """Where a login came from. Stored on the session for listSessions()."""

    ip_address: str | None = None
    user_agent: str | None = None
    fingerprint: str | None = None


@dataclass
class Session:
    """Server-side binding of an identity to a device across a token lifetime.

    access_jti / refresh_jti are the ids of the *current* tokens. They are
    NULL on a provisional (MFA-pending) session, which holds no tokens.
    """

    id: str
    identity_id: int
    created_at: str
    access_expires_at: str | None = None
    refresh_expires_at: str | None = None
    access_jti: str | None = None
    refresh_jti: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    mfa_required: bool = False
    mfa_verified: bool = False
    challenge_expires_at: str | None = None  # provisional sessions only
    revoked: bool = False
    revoked_at: str | None = None
    revoked_reason: str | None = None
    last_seen_at: str | None = None

    @property
    def mfa_pending(self) -> bool:
        return self.mfa_required and not self.mfa_verified


@dataclass
class TokenClaims:
    """Verified claims of an access or refresh token."""

    jti: str
    identity_id: int
    session_id: str
    token_type: str
    expires_at: int
    role: str | None = None


@dataclass
class SessionBundle:
    """Everything a client needs after a successful login, MFA step or refresh."""

    session_id: str
    identity_id: int
    role: str
    access_token: str
    access_expires_at: str
    refresh_token: str
    refresh_expires_at: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    require_password_change: bool = False


@dataclass
class MfaChallenge:
    """Primary credential accepted; a second factor is required.

    session_id identifies the provisional session the MFA step completes.
    """

    session_id: str
    identity_id: int
    expires_at: str
    methods: list[str] = field(default_factory=lambda: ["totp", "backup_code"])


@dataclass
class MfaEnrollment:
    secret: str
    provisioning_uri: str


@dataclass
class AuthFailure:
    reason: FailureReason
    message: str = GENERIC_LOGIN_FAILURE
    # Internal context for audit and logs; never serialized to clients.
    identity_id: int | None = None
    session_id: str | None = None
    detail: str | None = None


class RotationOutcome(str, Enum):
    """Result of the atomic refresh-token rotation in IdentityStore."""

    ROTATED = "rotated"
    REUSED = "reused"  # presented id was already rotated; session now revoked
    REVOKED = "revoked"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class FailureRecord:
    """State after IdentityStore.register_failure()."""

    failed_attempts: int
    locked: bool = False
    locked_until: str | None = None
