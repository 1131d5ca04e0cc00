"""
audit/models.py -- Domain dataclasses and vocabularies for the audit trail.

Pattern: Data class (pure data container, zero logic). The hashing rules live
in audit/chain.py; persistence lives in audit/store.py.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class AuditCategory(str, Enum):
    AUTH = "AUTH"
    SECURITY = "SECURITY"
    ADMIN = "ADMIN"
    DATA = "DATA"


class AuditAction(str, Enum):
    """Tags written by the authentication core.

    Other parts of the application may append their own action strings;
    the store accepts any non-empty action.
    """

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    ORIGIN_DENIED = "ORIGIN_DENIED"
    MFA_CHALLENGE_ISSUED = "MFA_CHALLENGE_ISSUED"
    MFA_CHALLENGE_FAILED = "MFA_CHALLENGE_FAILED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_ENROLLMENT_STARTED = "MFA_ENROLLMENT_STARTED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    REFRESH_FAILURE = "REFRESH_FAILURE"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
    SESSION_REVOKED = "SESSION_REVOKED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_FORCED = "PASSWORD_RESET_FORCED"
    IDENTITY_CREATED = "IDENTITY_CREATED"
    IDENTITY_UPDATED = "IDENTITY_UPDATED"


@dataclass
class AuditEvent:
    """What a caller wants recorded. The trail assigns seq, timestamp and hashes."""

    action: str
    category: str = AuditCategory.AUTH.value
    actor_id: int | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuditLogEntry:
    """A persisted, immutable audit record.

    seq is the 1-based position in the single global chain. prev_hash is the
    self_hash of entry seq-1 ("" for the first entry).
    """

    seq: int
    action: str
    category: str
    created_at: str
    prev_hash: str
    self_hash: str
    actor_id: int | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class ChainVerification:
    """Result of replaying the chain.

    first_invalid is the 0-based position of the first entry whose stored
    hash, predecessor link, or sequence number does not check out. Every
    entry from that position on is unverifiable.
    """

    valid: bool
    checked: int
    first_invalid: int | None = None
    first_invalid_seq: int | None = None
    reason: str | None = None
