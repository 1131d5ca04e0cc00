"""
auth/mfa.py -- TOTP enrollment/verification and single-use backup codes.

Implements RFC 6238 TOTP with pyotp. Compatible with Google Authenticator,
Authy and other TOTP apps.

Security design decisions:
  Secrets at rest [K1]: the base32 seed is Fernet-encrypted (core.crypto
       SecretBox) before it reaches the store and decrypted only inside a
       single call. Enrollment writes a *pending* secret; it becomes active
       only after the user proves possession with a valid code.

  Clock skew: codes from MFA_VALID_WINDOW steps either side of now are
       accepted (default 1 = +/-30s).

  Replay [M1]: the matched time-step must be newer than the last accepted
       step, enforced with a conditional UPDATE. A code observed over a
       shoulder cannot be replayed inside its 30-second life.

  Backup codes: MFA_BACKUP_CODE_COUNT codes of 8 hex characters, shown once.
       Stored as HMAC-SHA256(SECRET_KEY, "<identity id>:<code>") -- a keyed
       digest so the 32-bit code space cannot be brute-forced from a DB dump,
       and deterministic so consumption is one conditional UPDATE
       (used_at IS NULL), which makes every code at-most-once.

  Disable: requires a fresh TOTP code or an unused backup code. Holding a
       session is not enough, so a hijacked session cannot strip the second
       factor. This engine only answers yes or no; AuthService.disable_mfa()
       counts a wrong code against the lockout and journals it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime

import pyotp

from audit.models import AuditAction, AuditCategory, AuditEvent
from audit.store import AuditTrail
from auth.models import Identity, MfaEnrollment
from auth.store import IdentityStore
from core import crypto
from core.config import Settings
from core.crypto import SecretBox
from core.db import utcnow

logger = logging.getLogger("complianceauth.auth.mfa")

_NON_HEX = re.compile(r"[^0-9A-F]")
_NON_DIGIT = re.compile(r"\D")


def normalize_backup_code(code: str) -> str:
    """Upper-case and strip separators: "ab12-cd34" -> "AB12CD34"."""
    return _NON_HEX.sub("", (code or "").upper())


def is_totp_format(code: str) -> bool:
    """True for six digits, ignoring spaces (authenticator apps show "123 456")."""
    cleaned = (code or "").replace(" ", "")
    return len(cleaned) == 6 and cleaned.isdigit()


class MfaEngine:
    """TOTP and backup-code operations for one identity at a time.

    Usage:
        engine = MfaEngine(store, SecretBox(SettingsKeyProvider(settings)), trail, settings)
        enrollment = engine.begin_enrollment(identity)      # show QR / secret
        codes = engine.confirm_enrollment(identity, "123456")  # show codes once
        engine.verify(identity, "654321")
    """

    def __init__(
        self,
        store: IdentityStore,
        box: SecretBox,
        audit: AuditTrail,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._box = box
        self._audit = audit
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_enrollment(self, identity: Identity) -> MfaEnrollment:
        """Generate a fresh secret and park it as pending until confirmed.

        Calling again before confirmation replaces the pending secret, so an
        abandoned QR code stops working.
        """
        secret = pyotp.random_base32()
        self._store.set_pending_mfa_secret(identity.id, self._box.encrypt(secret))
        uri = pyotp.TOTP(secret).provisioning_uri(name=identity.username, issuer_name=self._settings.mfa_issuer)
        self._journal(AuditAction.MFA_ENROLLMENT_STARTED, identity.id)
        return MfaEnrollment(secret=secret, provisioning_uri=uri)

    def confirm_enrollment(self, identity: Identity, code: str) -> list[str] | None:
        """Activate the pending secret if `code` matches it. Returns the backup codes.

        None means no pending enrollment, a wrong code, or a concurrent
        confirmation won the race.
        """
        pending = identity.mfa_pending_secret_encrypted
        if not pending:
            return None
        step = self._match_step(self._box.decrypt(pending), code)
        if step is None:
            return None
        codes = self._generate_backup_codes()
        digests = [self._code_digest(identity.id, normalize_backup_code(c)) for c in codes]
        if not self._store.activate_mfa(identity.id, pending, step, digests, self._clock()):
            return None
        logger.info("MFA enabled for identity %d", identity.id)
        self._journal(AuditAction.MFA_ENABLED, identity.id, backup_codes=len(codes))
        return codes

    # ------------------------------------------------------------------
    # Verification [M1]
    # ------------------------------------------------------------------

    def verify(self, identity: Identity, code: str) -> bool:
        if not identity.mfa_enabled or not identity.mfa_secret_encrypted:
            return False
        step = self._match_step(self._box.decrypt(identity.mfa_secret_encrypted), code)
        if step is None:
            return False
        if not self._store.advance_mfa_step(identity.id, step):
            logger.warning("Replayed TOTP code rejected for identity %d", identity.id)
            return False
        return True

    def _match_step(self, secret: str, code: str) -> int | None:
        """Return the time-step `code` belongs to within the skew window, else None."""
        cleaned = _NON_DIGIT.sub("", code or "")
        if len(cleaned) != 6:
            return None
        totp = pyotp.TOTP(secret)
        now = self._clock()
        base = totp.timecode(now)
        window = self._settings.mfa_valid_window
        for offset in range(-window, window + 1):
            if crypto.constant_time_equals(totp.at(now, offset), cleaned):
                return base + offset
        return None

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def _generate_backup_codes(self) -> list[str]:
        codes = []
        for _ in range(self._settings.mfa_backup_code_count):
            raw = crypto.random_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    def _code_digest(self, identity_id: int, normalized: str) -> str:
        return crypto.keyed_digest(self._settings.secret_key, f"{identity_id}:{normalized}")

    def consume_backup_code(self, identity: Identity, code: str) -> bool:
        """Accept an unused backup code exactly once."""
        if not identity.mfa_enabled:
            return False
        normalized = normalize_backup_code(code)
        if len(normalized) != 8:
            return False
        if not self._store.consume_backup_code(identity.id, self._code_digest(identity.id, normalized), self._clock()):
            return False
        remaining = self._store.count_unused_backup_codes(identity.id)
        logger.info("Backup code used by identity %d (%d remaining)", identity.id, remaining)
        self._journal(AuditAction.BACKUP_CODE_USED, identity.id, remaining=remaining)
        return True

    def regenerate_backup_codes(self, identity: Identity, code: str) -> list[str] | None:
        """Replace all backup codes. Requires a fresh TOTP code."""
        if not self.verify(identity, code):
            return None
        codes = self._generate_backup_codes()
        digests = [self._code_digest(identity.id, normalize_backup_code(c)) for c in codes]
        self._store.replace_backup_codes(identity.id, digests, self._clock())
        self._journal(AuditAction.BACKUP_CODES_REGENERATED, identity.id, backup_codes=len(codes))
        return codes

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------

    def disable(self, identity: Identity, code: str) -> bool:
        """Turn MFA off. Requires a fresh TOTP code or an unused backup code."""
        proven = self.verify(identity, code) if is_totp_format(code) else self.consume_backup_code(identity, code)
        if not proven:
            return False
        self._store.disable_mfa(identity.id)
        logger.info("MFA disabled for identity %d", identity.id)
        self._journal(AuditAction.MFA_DISABLED, identity.id)
        return True

    def _journal(self, action: AuditAction, identity_id: int, **details) -> None:
        self._audit.append(
            AuditEvent(
                action=action.value,
                category=AuditCategory.SECURITY.value,
                actor_id=identity_id,
                entity_type="identity",
                entity_id=str(identity_id),
                details=details,
            )
        )
