"""
auth/tokens.py -- JWT key ring, token issuance/rotation/revocation, cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Every token carries a `kid` header naming the
       key that signed it. The ring holds SECRET_KEY under JWT_KEY_ID plus any
       JWT_PREVIOUS_KEYS, so a key can be rotated without logging everybody
       out: sign with the new key, keep verifying the old one until its
       tokens have expired. An unknown kid is simply an invalid token.

  Claims: access tokens carry sub (identity id), role, sid (session id),
       jti (unique id), iat, exp and typ="access". Refresh tokens carry sub,
       sid, jti, exp and typ="refresh". The typ check stops a refresh token
       from being presented as an access token and vice versa.

  Blacklist first [B1]: a signature proves a token was minted here, not that
       it is still wanted. Validation reads the unverified jti, consults the
       blacklist, and only then verifies and trusts the signed claims.

  Refresh rotation [B2]: single-use. Each refresh stores a new refresh jti on
       the session and blacklists the old one in the same transaction
       (IdentityStore.rotate_refresh). Presenting an already-rotated refresh
       token is treated as theft: the whole session is revoked.

  Cookies: httpOnly, samesite=strict, secure=SECURE_COOKIES. The refresh
       cookie is path-scoped to the refresh endpoint so the browser never
       sends it anywhere else.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from jose import JWTError, jwt

from auth.models import (
    AuthFailure,
    DeviceContext,
    FailureReason,
    Identity,
    MfaChallenge,
    RotationOutcome,
    Session,
    SessionBundle,
    TokenClaims,
)
from auth.store import IdentityStore
from core import crypto
from core.config import Settings, get_settings
from core.db import to_iso, utcnow

logger = logging.getLogger("complianceauth.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

REFRESH_FAILURE_MESSAGE = "Refresh token is invalid or expired."

# ---------------------------------------------------------------------------
# Key ring
# ---------------------------------------------------------------------------


class KeyRing:
    """Signing key plus verification-only predecessors, addressed by kid."""

    def __init__(self, active_kid: str, active_key: str, previous: dict[str, str] | None = None) -> None:
        self.active_kid = active_kid
        self._keys = dict(previous or {})
        self._keys[active_kid] = active_key

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyRing:
        return cls(settings.jwt_key_id, settings.secret_key, settings.jwt_previous_keys)

    @property
    def signing_key(self) -> str:
        return self._keys[self.active_kid]

    def key_for(self, kid: str | None) -> str | None:
        if not kid:
            return None
        return self._keys.get(kid)


def encode_token(claims: dict, ring: KeyRing) -> str:
    return jwt.encode(claims, ring.signing_key, algorithm=_ALGORITHM, headers={"kid": ring.active_kid})


def unverified_jti(token: str) -> str | None:
    """Read jti without trusting anything else in the token [B1]."""
    try:
        jti = jwt.get_unverified_claims(token).get("jti")
    except JWTError:
        return None
    return jti if isinstance(jti, str) and jti else None


def decode_token(token: str, ring: KeyRing, expected_type: str, now: datetime | None = None) -> TokenClaims | None:
    """Verify signature, expiry and type. Returns None on any failure.

    Expiry is checked by python-jose against the wall clock and again against
    `now` so an injected clock (tests, replay tooling) is authoritative.
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        return None
    key = ring.key_for(header.get("kid"))
    if key is None:
        return None
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != expected_type:
        return None
    if not all(payload.get(k) for k in ("sub", "sid", "jti", "exp")):
        return None
    if now is not None and payload["exp"] <= int(now.timestamp()):
        return None
    try:
        identity_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    return TokenClaims(
        jti=payload["jti"],
        identity_id=identity_id,
        session_id=payload["sid"],
        token_type=expected_type,
        expires_at=payload["exp"],
        role=payload.get("role"),
    )


# ---------------------------------------------------------------------------
# Issuer and session registry
# ---------------------------------------------------------------------------


@dataclass
class _Minted:
    access_token: str
    access_jti: str
    access_expires_at: datetime
    refresh_token: str
    refresh_jti: str
    refresh_expires_at: datetime


class TokenIssuer:
    """Mints, validates, rotates and revokes session tokens.

    Usage:
        issuer = TokenIssuer(store, settings)
        bundle = issuer.issue(identity, DeviceContext(ip_address="10.0.0.5"))
        claims = issuer.validate_access_token(bundle.access_token)
        bundle2 = issuer.refresh(bundle.refresh_token)
        issuer.revoke(bundle.session_id)
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        key_ring: KeyRing | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._ring = key_ring or KeyRing.from_settings(settings)

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def _mint(self, identity_id: int, role: str, session_id: str, now: datetime) -> _Minted:
        access_jti = crypto.random_token(16)
        refresh_jti = crypto.random_token(16)
        access_exp = now + timedelta(seconds=self._settings.access_token_expire_seconds)
        refresh_exp = now + timedelta(seconds=self._settings.refresh_token_expire_seconds)
        access = encode_token(
            {
                "sub": str(identity_id),
                "role": role,
                "sid": session_id,
                "jti": access_jti,
                "iat": int(now.timestamp()),
                "exp": int(access_exp.timestamp()),
                "typ": "access",
            },
            self._ring,
        )
        refresh = encode_token(
            {
                "sub": str(identity_id),
                "sid": session_id,
                "jti": refresh_jti,
                "iat": int(now.timestamp()),
                "exp": int(refresh_exp.timestamp()),
                "typ": "refresh",
            },
            self._ring,
        )
        return _Minted(access, access_jti, access_exp, refresh, refresh_jti, refresh_exp)

    def _bundle(self, identity: Identity, session_id: str, minted: _Minted) -> SessionBundle:
        return SessionBundle(
            session_id=session_id,
            identity_id=identity.id,
            role=identity.role,
            access_token=minted.access_token,
            access_expires_at=to_iso(minted.access_expires_at),
            refresh_token=minted.refresh_token,
            refresh_expires_at=to_iso(minted.refresh_expires_at),
            access_expires_in=self._settings.access_token_expire_seconds,
            refresh_expires_in=self._settings.refresh_token_expire_seconds,
        )

    def issue(self, identity: Identity, context: DeviceContext) -> SessionBundle:
        """Open a fully authenticated session for an active identity."""
        if not identity.is_active:
            raise ValueError(f"Refusing to issue a session for non-active identity {identity.id}")
        now = self._clock()
        session_id = crypto.random_token(32)
        minted = self._mint(identity.id, identity.role, session_id, now)
        self._store.create_session(
            Session(
                id=session_id,
                identity_id=identity.id,
                created_at=to_iso(now),
                access_jti=minted.access_jti,
                access_expires_at=to_iso(minted.access_expires_at),
                refresh_jti=minted.refresh_jti,
                refresh_expires_at=to_iso(minted.refresh_expires_at),
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                device_fingerprint=context.fingerprint,
            )
        )
        logger.info("Session %s... issued for identity %d", session_id[:8], identity.id)
        return self._bundle(identity, session_id, minted)

    def begin_provisional(self, identity: Identity, context: DeviceContext) -> MfaChallenge:
        """Open an MFA-pending session. It holds no tokens until complete_mfa()."""
        if not identity.is_active:
            raise ValueError(f"Refusing to open a session for non-active identity {identity.id}")
        now = self._clock()
        session_id = crypto.random_token(32)
        expires = to_iso(now + timedelta(seconds=self._settings.mfa_challenge_seconds))
        self._store.create_session(
            Session(
                id=session_id,
                identity_id=identity.id,
                created_at=to_iso(now),
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                device_fingerprint=context.fingerprint,
                mfa_required=True,
                challenge_expires_at=expires,
            )
        )
        return MfaChallenge(session_id=session_id, identity_id=identity.id, expires_at=expires)

    def complete_mfa(self, session_id: str, identity: Identity) -> SessionBundle | None:
        """Attach tokens to a provisional session. None if the challenge is gone."""
        now = self._clock()
        minted = self._mint(identity.id, identity.role, session_id, now)
        activated = self._store.activate_session(
            session_id,
            minted.access_jti,
            to_iso(minted.access_expires_at),
            minted.refresh_jti,
            to_iso(minted.refresh_expires_at),
            now,
        )
        if not activated:
            return None
        return self._bundle(identity, session_id, minted)

    # ------------------------------------------------------------------
    # Validation [B1]
    # ------------------------------------------------------------------

    def is_blacklisted(self, token_id: str) -> bool:
        return self._store.is_blacklisted(token_id)

    def validate_access_token(self, token: str) -> TokenClaims | None:
        """Return claims for a usable access token, None otherwise.

        Usable means: not blacklisted, validly signed by a known key, unexpired,
        typ=access, and the current access token of a live, fully
        authenticated session.
        """
        jti = unverified_jti(token)
        if jti is None or self._store.is_blacklisted(jti):
            return None
        now = self._clock()
        claims = decode_token(token, self._ring, "access", now)
        if claims is None or claims.jti != jti:
            return None
        session = self._store.get_session(claims.session_id)
        if (
            session is None
            or session.revoked
            or session.mfa_pending
            or session.identity_id != claims.identity_id
            or session.access_jti != claims.jti
        ):
            return None
        return claims

    def session_for_refresh_token(self, token: str) -> str | None:
        """Session id named by a current refresh token, without spending it.

        Lets logout end a session whose access token has already expired.
        A rotated (blacklisted) token names nothing.
        """
        jti = unverified_jti(token)
        if jti is None or self._store.is_blacklisted(jti):
            return None
        claims = decode_token(token, self._ring, "refresh", self._clock())
        if claims is None or claims.jti != jti:
            return None
        return claims.session_id

    # ------------------------------------------------------------------
    # Rotation [B2]
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> SessionBundle | AuthFailure:
        jti = unverified_jti(refresh_token)
        if jti is None:
            return _refresh_failure("malformed")
        blacklisted = self._store.is_blacklisted(jti)
        now = self._clock()
        claims = decode_token(refresh_token, self._ring, "refresh", now)
        if claims is None or claims.jti != jti:
            return _refresh_failure("invalid_signature_or_expired")

        if blacklisted:
            # Signature checked, so sid is ours. A rotated token coming back
            # means two parties hold it: end the session for both.
            revoked = self._store.revoke_session(claims.session_id, "refresh_reuse", now)
            logger.warning("Rotated refresh token re-presented for session %s...", claims.session_id[:8])
            return _refresh_failure("reused" if revoked else "revoked", claims)

        identity = self._store.get_by_id(claims.identity_id)
        if identity is None or not identity.is_active:
            self._store.revoke_session(claims.session_id, "identity_inactive", now)
            return _refresh_failure("identity_inactive", claims)

        minted = self._mint(identity.id, identity.role, claims.session_id, now)
        outcome = self._store.rotate_refresh(
            claims.session_id,
            jti,
            minted.access_jti,
            to_iso(minted.access_expires_at),
            minted.refresh_jti,
            to_iso(minted.refresh_expires_at),
            now,
        )
        if outcome is RotationOutcome.ROTATED:
            return self._bundle(identity, claims.session_id, minted)
        if outcome is RotationOutcome.REUSED:
            logger.warning("Refresh reuse detected during rotation for session %s...", claims.session_id[:8])
        return _refresh_failure(outcome.value, claims)

    # ------------------------------------------------------------------
    # Revocation and listing
    # ------------------------------------------------------------------

    def revoke(self, session_id: str, reason: str = "revoked") -> bool:
        return self._store.revoke_session(session_id, reason, self._clock())

    def revoke_all(self, identity_id: int, reason: str = "revoke_all", except_session_id: str | None = None) -> int:
        count = self._store.revoke_all_sessions(identity_id, reason, self._clock(), except_session_id)
        logger.info("Revoked %d session(s) for identity %d (%s)", count, identity_id, reason)
        return count

    def get_session(self, session_id: str) -> Session | None:
        return self._store.get_session(session_id)

    def list_sessions(self, identity_id: int) -> list[Session]:
        return self._store.list_sessions(identity_id, self._clock())

    def purge_expired_blacklist(self) -> int:
        return self._store.purge_expired_blacklist(self._clock())


def _refresh_failure(detail: str, claims: TokenClaims | None = None) -> AuthFailure:
    return AuthFailure(
        FailureReason.REFRESH_TOKEN_INVALID,
        message=REFRESH_FAILURE_MESSAGE,
        identity_id=claims.identity_id if claims else None,
        session_id=claims.session_id if claims else None,
        detail=detail,
    )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookies(response, bundle: SessionBundle) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches each token's own lifetime so cookie and token expire together.
    path: the refresh cookie only travels to the refresh endpoint.
    """
    settings = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=bundle.access_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=bundle.access_expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=bundle.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=bundle.refresh_expires_in,
        path=settings.refresh_cookie_path,
    )


def clear_session_cookies(response) -> None:
    settings = get_settings()
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path=settings.refresh_cookie_path)
