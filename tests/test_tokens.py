"""Unit tests for auth/tokens.py -- key ring, issuance, rotation and revocation.

Covers:
- issued access tokens validate and carry identity/session/role claims
- typ confusion: a refresh token is never an access token and vice versa
- expiry follows the injected clock
- S1 -> refresh -> S2; re-presenting S1.refresh fails and revokes S2
- revoke_all() invalidates every outstanding access and refresh token
- kid-addressed key rotation: previous keys verify, unknown kids do not
- provisional (MFA-pending) sessions hold no usable tokens and complete once
- blacklist purge, session listing and cookie attributes
"""

from __future__ import annotations

import pytest
from starlette.responses import Response

from auth.models import AuthFailure, DeviceContext, FailureReason, SessionBundle
from auth.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    KeyRing,
    TokenIssuer,
    clear_session_cookies,
    decode_token,
    set_session_cookies,
    unverified_jti,
)

CTX = DeviceContext(ip_address="10.0.0.5", user_agent="pytest")


@pytest.fixture
def alice(make_identity):
    return make_identity("alice")


@pytest.fixture
def issuer(service):
    return service.issuer


class TestIssueAndValidate:
    def test_access_token_validates(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        claims = issuer.validate_access_token(bundle.access_token)
        assert claims is not None
        assert claims.identity_id == alice.id
        assert claims.session_id == bundle.session_id
        assert claims.role == "user"
        assert bundle.access_expires_in == 900

    def test_session_records_device_context(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        session = issuer.get_session(bundle.session_id)
        assert session.ip_address == "10.0.0.5"
        assert session.user_agent == "pytest"

    def test_refresh_token_is_not_an_access_token(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        assert issuer.validate_access_token(bundle.refresh_token) is None

    def test_access_token_is_not_a_refresh_token(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        result = issuer.refresh(bundle.access_token)
        assert isinstance(result, AuthFailure)
        assert result.reason is FailureReason.REFRESH_TOKEN_INVALID

    def test_tampered_and_garbage_tokens(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        head, payload, sig = bundle.access_token.split(".")
        flipped = "A" if sig[10] != "A" else "B"
        tampered = ".".join([head, payload, sig[:10] + flipped + sig[11:]])
        assert issuer.validate_access_token(tampered) is None
        assert issuer.validate_access_token("not-a-jwt") is None
        assert isinstance(issuer.refresh("not-a-jwt"), AuthFailure)

    def test_access_token_expires_with_clock(self, issuer, alice, clock):
        bundle = issuer.issue(alice, CTX)
        clock.advance(seconds=901)
        assert issuer.validate_access_token(bundle.access_token) is None

    def test_inactive_identity_never_gets_a_session(self, issuer, make_identity):
        carol = make_identity("carol", status="inactive")
        with pytest.raises(ValueError):
            issuer.issue(carol, CTX)
        with pytest.raises(ValueError):
            issuer.begin_provisional(carol, CTX)


class TestRotation:
    def test_refresh_reuse_revokes_session(self, issuer, alice):
        s1 = issuer.issue(alice, CTX)
        s2 = issuer.refresh(s1.refresh_token)
        assert isinstance(s2, SessionBundle)
        assert s2.session_id == s1.session_id
        assert s2.refresh_token != s1.refresh_token
        assert issuer.validate_access_token(s1.access_token) is None
        assert issuer.validate_access_token(s2.access_token) is not None

        replay = issuer.refresh(s1.refresh_token)
        assert isinstance(replay, AuthFailure)
        assert replay.detail == "reused"

        assert issuer.get_session(s1.session_id).revoked
        assert issuer.validate_access_token(s2.access_token) is None
        assert isinstance(issuer.refresh(s2.refresh_token), AuthFailure)

    def test_expired_refresh_fails(self, issuer, alice, clock):
        bundle = issuer.issue(alice, CTX)
        clock.advance(days=7, seconds=1)
        result = issuer.refresh(bundle.refresh_token)
        assert isinstance(result, AuthFailure)
        assert not issuer.get_session(bundle.session_id).revoked

    def test_session_for_refresh_token(self, issuer, alice, clock):
        s1 = issuer.issue(alice, CTX)
        assert issuer.session_for_refresh_token(s1.refresh_token) == s1.session_id
        assert issuer.session_for_refresh_token(s1.access_token) is None
        assert issuer.session_for_refresh_token("garbage") is None

        s2 = issuer.refresh(s1.refresh_token)
        assert issuer.session_for_refresh_token(s1.refresh_token) is None
        assert issuer.session_for_refresh_token(s2.refresh_token) == s1.session_id
        assert not issuer.get_session(s1.session_id).revoked

        clock.advance(days=7, seconds=1)
        assert issuer.session_for_refresh_token(s2.refresh_token) is None

    def test_refresh_for_deactivated_identity_revokes(self, issuer, alice, store):
        bundle = issuer.issue(alice, CTX)
        store.update_identity(alice.id, status="inactive")
        result = issuer.refresh(bundle.refresh_token)
        assert isinstance(result, AuthFailure)
        assert result.detail == "identity_inactive"
        assert issuer.get_session(bundle.session_id).revoked


class TestRevocation:
    def test_revoke_all_invalidates_every_token(self, issuer, alice):
        bundles = [issuer.issue(alice, CTX) for _ in range(3)]
        assert issuer.revoke_all(alice.id) == 3
        for b in bundles:
            assert issuer.validate_access_token(b.access_token) is None
            assert isinstance(issuer.refresh(b.refresh_token), AuthFailure)
        assert issuer.list_sessions(alice.id) == []

    def test_revoke_all_can_keep_one_session(self, issuer, alice):
        keep = issuer.issue(alice, CTX)
        drop = issuer.issue(alice, CTX)
        assert issuer.revoke_all(alice.id, except_session_id=keep.session_id) == 1
        assert issuer.validate_access_token(keep.access_token) is not None
        assert issuer.validate_access_token(drop.access_token) is None

    def test_revoke_blacklists_current_tokens(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        assert issuer.revoke(bundle.session_id) is True
        assert issuer.revoke(bundle.session_id) is False
        assert issuer.is_blacklisted(unverified_jti(bundle.access_token))
        assert issuer.is_blacklisted(unverified_jti(bundle.refresh_token))

    def test_purge_expired_blacklist(self, issuer, alice, clock):
        bundle = issuer.issue(alice, CTX)
        assert isinstance(issuer.refresh(bundle.refresh_token), SessionBundle)
        assert issuer.purge_expired_blacklist() == 0
        clock.advance(days=8)
        assert issuer.purge_expired_blacklist() == 2


class TestKeyRotation:
    def test_previous_key_still_verifies(self, store, settings, clock, alice):
        old_ring = KeyRing("k1", "a" * 40)
        old_issuer = TokenIssuer(store, settings, clock, key_ring=old_ring)
        bundle = old_issuer.issue(alice, CTX)

        rotated = TokenIssuer(store, settings, clock, key_ring=KeyRing("k2", "b" * 40, {"k1": "a" * 40}))
        assert rotated.validate_access_token(bundle.access_token) is not None

        forgotten = TokenIssuer(store, settings, clock, key_ring=KeyRing("k2", "b" * 40))
        assert forgotten.validate_access_token(bundle.access_token) is None

    def test_new_tokens_carry_active_kid(self, store, settings, clock, alice):
        ring = KeyRing("k2", "b" * 40, {"k1": "a" * 40})
        bundle = TokenIssuer(store, settings, clock, key_ring=ring).issue(alice, CTX)
        assert decode_token(bundle.access_token, KeyRing("k2", "b" * 40), "access") is not None
        assert decode_token(bundle.access_token, KeyRing("k1", "a" * 40), "access") is None


class TestProvisional:
    def test_pending_session_completes_once(self, issuer, alice):
        challenge = issuer.begin_provisional(alice, CTX)
        session = issuer.get_session(challenge.session_id)
        assert session.mfa_pending
        assert session.access_jti is None

        bundle = issuer.complete_mfa(challenge.session_id, alice)
        assert isinstance(bundle, SessionBundle)
        assert issuer.validate_access_token(bundle.access_token) is not None
        assert issuer.complete_mfa(challenge.session_id, alice) is None

    def test_expired_challenge_cannot_complete(self, issuer, alice, clock):
        challenge = issuer.begin_provisional(alice, CTX)
        clock.advance(seconds=301)
        assert issuer.complete_mfa(challenge.session_id, alice) is None

    def test_list_sessions_includes_live_challenge(self, issuer, alice):
        issuer.issue(alice, CTX)
        issuer.begin_provisional(alice, CTX)
        sessions = issuer.list_sessions(alice.id)
        assert len(sessions) == 2
        assert sum(1 for s in sessions if s.mfa_pending) == 1


class TestCookies:
    def test_cookie_attributes(self, issuer, alice):
        bundle = issuer.issue(alice, CTX)
        response = Response()
        set_session_cookies(response, bundle)
        cookies = response.headers.getlist("set-cookie")
        access = next(c for c in cookies if c.startswith(f"{ACCESS_COOKIE}="))
        refresh = next(c for c in cookies if c.startswith(f"{REFRESH_COOKIE}="))
        for cookie in (access, refresh):
            assert "HttpOnly" in cookie
            assert "samesite=strict" in cookie.lower()
        assert "Path=/;" in access or access.endswith("Path=/")
        assert "Path=/api/v1/auth/refresh" in refresh
        assert "Max-Age=900" in access

    def test_clear_cookies(self):
        response = Response()
        clear_session_cookies(response)
        cookies = response.headers.getlist("set-cookie")
        assert len(cookies) == 2
        assert all("Max-Age=0" in c for c in cookies)
