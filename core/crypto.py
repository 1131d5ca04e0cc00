"""
core/crypto.py -- Hashing, secrets-at-rest encryption, and secure randomness.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor is
       configurable (BCRYPT_ROUNDS) so tests can run at the minimum cost while
       production keeps 12. verify_secret() never raises -- a malformed stored
       hash is simply a non-match.

  Timing equalization [C1]: dummy_hash() returns a real bcrypt hash at the
       requested cost, computed once per cost and cached. Callers verify
       against it when the identifier is unknown so the response time does not
       reveal whether the account exists.

  Keyed digests: HMAC-SHA256(SECRET_KEY, value) for short random values that
       need O(1) lookup (backup codes). An attacker holding the DB but not the
       key cannot brute-force the 32-bit code space offline.

  Secrets at rest [K1]: Fernet (AES-128-CBC + HMAC-SHA256) through MultiFernet.
       Encryption always uses the primary key; decryption tries every
       configured key, so keys rotate by prepending a new one and re-encrypting
       with SecretBox.rotate(). Key material comes from a KeyProvider, never
       from a constant in code.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache
from typing import Protocol

import bcrypt
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from core.config import Settings

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_secret(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext.

    bcrypt truncates input at 72 bytes. The API layer caps password fields at
    128 characters and the policy check runs before hashing.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=4)
def dummy_hash(rounds: int = 12) -> str:
    """Cached bcrypt hash used to equalize timing for unknown identifiers [C1]."""
    return hash_secret("complianceauth_timing_dummy", rounds)


# ---------------------------------------------------------------------------
# Digests and comparison
# ---------------------------------------------------------------------------


def keyed_digest(key: str, value: str) -> str:
    return hmac.new(key.encode(), value.encode(), hashlib.sha256).hexdigest()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Secure random
# ---------------------------------------------------------------------------


def random_token(nbytes: int = 32) -> str:
    """URL-safe random string with nbytes of entropy (session ids, jti)."""
    return secrets.token_urlsafe(nbytes)


def random_hex(nbytes: int = 4) -> str:
    return secrets.token_hex(nbytes)


# ---------------------------------------------------------------------------
# Secrets at rest [K1]
# ---------------------------------------------------------------------------


class KeyProvider(Protocol):
    """Source of Fernet keys. The first key is the primary (encrypting) key."""

    def fernet_keys(self) -> list[str]: ...


class SettingsKeyProvider:
    """KeyProvider backed by ENCRYPTION_KEYS / ENCRYPTION_KEYS_FILE.

    Settings has already resolved the file and validated every key, so this
    is a thin adapter. A KMS-backed provider only needs fernet_keys().
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def fernet_keys(self) -> list[str]:
        return self._settings.encryption_key_list


class SecretBox:
    """Encrypt/decrypt short secrets (TOTP seeds) for storage.

    Usage:
        box = SecretBox(SettingsKeyProvider(get_settings()))
        token = box.encrypt("JBSWY3DPEHPK3PXP")
        box.decrypt(token)  # -> "JBSWY3DPEHPK3PXP"
    """

    def __init__(self, provider: KeyProvider) -> None:
        keys = provider.fernet_keys()
        if not keys:
            raise ValueError("KeyProvider returned no encryption keys.")
        self._fernet = MultiFernet([Fernet(k.encode()) for k in keys])

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt with any configured key.

        Raises cryptography.fernet.InvalidToken when no configured key matches.
        That means lost or misconfigured key material, which callers must not
        paper over.
        """
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")

    def rotate(self, token: str) -> str:
        """Re-encrypt a stored token under the current primary key."""
        return self._fernet.rotate(token.encode("ascii")).decode("ascii")


__all__ = [
    "InvalidToken",
    "KeyProvider",
    "SecretBox",
    "SettingsKeyProvider",
    "constant_time_equals",
    "dummy_hash",
    "hash_secret",
    "keyed_digest",
    "random_hex",
    "random_token",
    "sha256_hex",
    "verify_secret",
]
