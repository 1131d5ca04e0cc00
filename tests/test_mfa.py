"""Unit tests for auth/mfa.py -- TOTP enrollment, verification and backup codes.

Covers:
- enrollment parks an encrypted pending secret; confirmation activates it
- a wrong or missing confirmation code leaves MFA off
- codes inside the skew window are accepted, outside it rejected
- a code is never accepted twice inside its time-step (replay)
- backup codes are single use, format-tolerant, and independent of each other
- regeneration needs a fresh TOTP code and invalidates the previous set
- disabling needs a TOTP or backup code
"""

from __future__ import annotations

import re

import pyotp
import pytest

from auth.mfa import is_totp_format, normalize_backup_code


@pytest.fixture
def alice(make_identity):
    return make_identity("alice")


@pytest.fixture
def enrolled(service, store, clock, alice):
    """Enroll alice and step the clock past the confirmation step.

    Returns (secret, backup_codes).
    """
    enrollment = service.mfa.begin_enrollment(alice)
    code = pyotp.TOTP(enrollment.secret).at(clock.now)
    codes = service.mfa.confirm_enrollment(store.get_by_id(alice.id), code)
    assert codes is not None
    clock.advance(seconds=30)
    return enrollment.secret, codes


def _fresh(store, identity):
    return store.get_by_id(identity.id)


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [("ab12-cd34", "AB12CD34"), ("AB12 CD34", "AB12CD34"), ("", ""), (None, "")],
    )
    def test_normalize_backup_code(self, raw, expected):
        assert normalize_backup_code(raw) == expected

    @pytest.mark.parametrize(
        "code,expected",
        [("123456", True), ("123 456", True), ("12345", False), ("AB12-CD34", False), ("", False)],
    )
    def test_is_totp_format(self, code, expected):
        assert is_totp_format(code) is expected


class TestEnrollment:
    def test_pending_secret_is_encrypted(self, service, store, alice, trail):
        enrollment = service.mfa.begin_enrollment(alice)
        identity = _fresh(store, alice)
        assert identity.mfa_enabled is False
        assert identity.mfa_pending_secret_encrypted
        assert enrollment.secret not in identity.mfa_pending_secret_encrypted
        assert enrollment.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=ComplianceAuth" in enrollment.provisioning_uri
        assert trail.count(action="MFA_ENROLLMENT_STARTED") == 1

    def test_confirm_activates_and_returns_codes(self, service, store, alice, enrolled, trail):
        secret, codes = enrolled
        identity = _fresh(store, alice)
        assert identity.mfa_enabled is True
        assert identity.mfa_pending_secret_encrypted is None
        assert secret not in identity.mfa_secret_encrypted
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c) for c in codes)
        assert store.count_unused_backup_codes(alice.id) == 10
        assert trail.count(action="MFA_ENABLED") == 1

    def test_wrong_code_does_not_activate(self, service, store, alice, clock):
        enrollment = service.mfa.begin_enrollment(alice)
        good = pyotp.TOTP(enrollment.secret).at(clock.now)
        wrong = f"{(int(good) + 1) % 1_000_000:06d}"
        assert service.mfa.confirm_enrollment(_fresh(store, alice), wrong) is None
        assert _fresh(store, alice).mfa_enabled is False

    def test_confirm_without_pending_secret(self, service, store, alice):
        assert service.mfa.confirm_enrollment(_fresh(store, alice), "123456") is None

    def test_restarting_enrollment_replaces_pending_secret(self, service, store, alice, clock):
        first = service.mfa.begin_enrollment(alice)
        service.mfa.begin_enrollment(alice)
        stale = pyotp.TOTP(first.secret).at(clock.now)
        # Vanishingly unlikely that both secrets produce the same code.
        assert service.mfa.confirm_enrollment(_fresh(store, alice), stale) is None


class TestVerify:
    def test_current_code_accepted_once(self, service, store, alice, clock, enrolled):
        secret, _ = enrolled
        code = pyotp.TOTP(secret).at(clock.now)
        assert service.mfa.verify(_fresh(store, alice), code) is True
        assert service.mfa.verify(_fresh(store, alice), code) is False

    def test_confirmation_code_cannot_be_replayed(self, service, store, alice, clock):
        enrollment = service.mfa.begin_enrollment(alice)
        code = pyotp.TOTP(enrollment.secret).at(clock.now)
        assert service.mfa.confirm_enrollment(_fresh(store, alice), code) is not None
        assert service.mfa.verify(_fresh(store, alice), code) is False

    def test_skew_window(self, service, store, alice, clock, enrolled):
        secret, _ = enrolled
        clock.advance(seconds=90)
        totp = pyotp.TOTP(secret)
        assert service.mfa.verify(_fresh(store, alice), totp.at(clock.now, -1)) is True
        clock.advance(seconds=90)
        assert service.mfa.verify(_fresh(store, alice), totp.at(clock.now, 2)) is False
        assert service.mfa.verify(_fresh(store, alice), totp.at(clock.now, 1)) is True

    def test_verify_when_not_enrolled(self, service, store, alice):
        assert service.mfa.verify(_fresh(store, alice), "123456") is False


class TestBackupCodes:
    def test_single_use(self, service, store, alice, enrolled, trail):
        _, codes = enrolled
        assert service.mfa.consume_backup_code(_fresh(store, alice), codes[0]) is True
        assert service.mfa.consume_backup_code(_fresh(store, alice), codes[0]) is False
        assert service.mfa.consume_backup_code(_fresh(store, alice), codes[1]) is True
        assert store.count_unused_backup_codes(alice.id) == 8
        assert trail.count(action="BACKUP_CODE_USED") == 2

    def test_format_tolerant(self, service, store, alice, enrolled):
        _, codes = enrolled
        sloppy = codes[2].replace("-", "").lower()
        assert service.mfa.consume_backup_code(_fresh(store, alice), sloppy) is True

    def test_unknown_code_rejected(self, service, store, alice, enrolled):
        assert service.mfa.consume_backup_code(_fresh(store, alice), "0000-0000") is False
        assert service.mfa.consume_backup_code(_fresh(store, alice), "nope") is False

    def test_codes_are_per_identity(self, service, store, make_identity, alice, enrolled):
        _, codes = enrolled
        bob = make_identity("bob")
        assert service.mfa.consume_backup_code(_fresh(store, bob), codes[0]) is False

    def test_regenerate_requires_totp_and_replaces_set(self, service, store, alice, clock, enrolled):
        secret, old_codes = enrolled
        assert service.mfa.regenerate_backup_codes(_fresh(store, alice), old_codes[0]) is None
        new_codes = service.mfa.regenerate_backup_codes(_fresh(store, alice), pyotp.TOTP(secret).at(clock.now))
        assert new_codes is not None
        assert set(new_codes).isdisjoint(old_codes)
        assert service.mfa.consume_backup_code(_fresh(store, alice), old_codes[1]) is False
        assert service.mfa.consume_backup_code(_fresh(store, alice), new_codes[0]) is True


class TestDisable:
    def test_wrong_code_keeps_mfa(self, service, store, alice, enrolled):
        assert service.mfa.disable(_fresh(store, alice), "FFFF-FFFF") is False
        assert _fresh(store, alice).mfa_enabled is True

    def test_disable_with_totp(self, service, store, alice, clock, enrolled, trail):
        secret, _ = enrolled
        assert service.mfa.disable(_fresh(store, alice), pyotp.TOTP(secret).at(clock.now)) is True
        identity = _fresh(store, alice)
        assert identity.mfa_enabled is False
        assert identity.mfa_secret_encrypted is None
        assert store.count_unused_backup_codes(alice.id) == 0
        assert trail.count(action="MFA_DISABLED") == 1

    def test_disable_with_backup_code(self, service, store, alice, enrolled):
        _, codes = enrolled
        assert service.mfa.disable(_fresh(store, alice), codes[0]) is True
        assert _fresh(store, alice).mfa_enabled is False
