"""
Unit tests for the two-factor service.

Covers TOTP generation and drift tolerance, backup codes, QR codes and the
disabled -> pending -> enabled enrollment state machine.
"""

import base64
import re

import pyotp
import pytest

from passman.database import User
from passman.exceptions import AuthFailureReason, ErrorKind
from passman.models.auth_models import MFAStatus
from passman.services.mfa_service import MAX_BACKUP_CODES, MFAMethod, MFAService

STEP_ALIGNED_TIME = 1_700_000_010


@pytest.fixture
def mfa_service(settings) -> MFAService:
    """MFA service without a database for the pure helpers."""
    return MFAService(settings=settings)


@pytest.fixture
def secret(mfa_service: MFAService) -> str:
    return mfa_service.generate_secret()


def enroll(core, user_id: int) -> str:
    """Run enrollment to completion and return the secret"""
    result = core.mfa.begin_enrollment(user_id, include_qr_code=False).unwrap()
    core.mfa.verify_enrollment(user_id, core.mfa.current_code(result.secret_key)).unwrap()
    return result.secret_key


@pytest.mark.unit
class TestSecretGeneration:
    """TOTP secrets are 160-bit base32 strings."""

    def test_secret_is_base32(self, mfa_service: MFAService) -> None:
        """Generated secret decodes as base32 to 20 bytes."""
        secret = mfa_service.generate_secret()
        assert re.match(r"^[A-Z2-7]+=*$", secret)
        assert len(base64.b32decode(secret)) == 20

    def test_secrets_are_unique(self, mfa_service: MFAService) -> None:
        """Each call generates a different secret."""
        assert len({mfa_service.generate_secret() for _ in range(10)}) == 10


@pytest.mark.unit
class TestTOTPValidation:
    """Codes are accepted within the configured drift window."""

    def test_code_matches_authenticator_apps(self, mfa_service: MFAService, secret: str) -> None:
        """Our code for a time equals what pyotp computes for that time."""
        assert mfa_service.current_code(secret, STEP_ALIGNED_TIME) == pyotp.TOTP(secret).at(STEP_ALIGNED_TIME)

    def test_code_is_six_digits(self, mfa_service: MFAService, secret: str) -> None:
        """Codes are zero-padded six digit strings."""
        code = mfa_service.generate_code(secret, STEP_ALIGNED_TIME // 30)
        assert len(code) == 6 and code.isdigit()

    def test_accepts_adjacent_steps(self, mfa_service: MFAService, secret: str) -> None:
        """With tolerance 1 the previous and next step are accepted."""
        code = mfa_service.generate_code(secret, STEP_ALIGNED_TIME // 30)

        assert mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME)
        assert mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME + 30)
        assert mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME - 30)

    def test_rejects_outside_window(self, mfa_service: MFAService, secret: str) -> None:
        """Three steps away is rejected."""
        code = mfa_service.generate_code(secret, STEP_ALIGNED_TIME // 30)

        assert not mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME + 90)
        assert not mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME - 90)

    def test_zero_tolerance_is_exact(self, mfa_service: MFAService, secret: str) -> None:
        """Tolerance 0 accepts only the current step."""
        code = mfa_service.generate_code(secret, STEP_ALIGNED_TIME // 30)

        assert mfa_service.validate_code(secret, code, tolerance_steps=0, for_time=STEP_ALIGNED_TIME)
        assert not mfa_service.validate_code(secret, code, tolerance_steps=0, for_time=STEP_ALIGNED_TIME + 30)

    def test_spaces_are_ignored(self, mfa_service: MFAService, secret: str) -> None:
        """Codes typed as '123 456' still validate."""
        code = mfa_service.generate_code(secret, STEP_ALIGNED_TIME // 30)
        spaced = f"{code[:3]} {code[3:]}"
        assert mfa_service.validate_code(secret, spaced, for_time=STEP_ALIGNED_TIME)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes(self, mfa_service: MFAService, secret: str, code) -> None:
        """Anything but six digits is rejected outright."""
        assert not mfa_service.validate_code(secret, code, for_time=STEP_ALIGNED_TIME)

    def test_malformed_secret(self, mfa_service: MFAService) -> None:
        """A secret that is not base32 never validates."""
        assert not mfa_service.validate_code("not base32!", "123456", for_time=STEP_ALIGNED_TIME)


@pytest.mark.unit
class TestBackupCodes:
    """Single-use recovery codes."""

    def test_default_count_and_format(self, mfa_service: MFAService) -> None:
        """Ten unique codes formatted XXXX-XXXX."""
        codes = mfa_service.generate_backup_codes()

        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert re.match(r"^[A-Z2-9]{4}-[A-Z2-9]{4}$", code)

    @pytest.mark.parametrize("count", [0, MAX_BACKUP_CODES + 1])
    def test_count_bounds(self, mfa_service: MFAService, count: int) -> None:
        """Counts outside 1..20 are rejected."""
        with pytest.raises(ValueError):
            mfa_service.generate_backup_codes(count)

    def test_hash_ignores_case_and_separators(self, mfa_service: MFAService) -> None:
        """'abcd-efgh' and 'ABCDEFGH' are the same code."""
        assert mfa_service.hash_backup_code("abcd-efgh") == mfa_service.hash_backup_code("ABCDEFGH")
        assert re.match(r"^[0-9a-f]{64}$", mfa_service.hash_backup_code("ABCDEFGH"))

    def test_validate_against_hashes(self, mfa_service: MFAService) -> None:
        """A listed code validates and reports which hash matched."""
        codes = mfa_service.generate_backup_codes(3)
        hashes = [mfa_service.hash_backup_code(c) for c in codes]

        valid, matched = mfa_service.validate_backup_code(hashes, codes[1].lower())
        assert valid
        assert matched == hashes[1]
        assert mfa_service.validate_backup_code(hashes, "ZZZZ-ZZZZ") == (False, None)


@pytest.mark.unit
class TestQRCode:
    def test_provisioning_uri(self, mfa_service: MFAService, secret: str) -> None:
        """The URI names the issuer and the account."""
        uri = mfa_service.provisioning_uri(secret, "alice@test.local")

        assert uri.startswith("otpauth://totp/")
        assert "issuer=PassMan" in uri
        assert f"secret={secret}" in uri

    def test_qr_code_is_png(self, mfa_service: MFAService, secret: str) -> None:
        """The QR code is base64-encoded PNG data."""
        data = mfa_service.generate_qr_code(mfa_service.provisioning_uri(secret, "alice@test.local"))
        assert base64.b64decode(data).startswith(b"\x89PNG")


@pytest.mark.unit
class TestEnrollment:
    """disabled -> pending -> enabled."""

    def test_new_user_is_disabled(self, core, alice) -> None:
        assert core.mfa.get_status(alice.user_id).unwrap() == MFAStatus.DISABLED

    def test_begin_sets_pending(self, core, alice) -> None:
        """Beginning stores the secret and hashed codes but does not enable."""
        result = core.mfa.begin_enrollment(alice.user_id).unwrap()

        user = core.db.get(User, alice.user_id)
        assert result.success
        assert result.qr_code_data
        assert user.mfa_status == MFAStatus.PENDING.value
        assert user.mfa_secret == result.secret_key
        assert len(user.backup_codes) == 10
        assert result.backup_codes[0] not in user.backup_codes
        assert not user.two_factor_enabled

    def test_verify_enables(self, core, alice, clock) -> None:
        """A correct code activates the factor."""
        enroll(core, alice.user_id)

        user = core.db.get(User, alice.user_id)
        assert user.two_factor_enabled
        assert user.mfa_enrolled_at == clock.now

    def test_verify_with_wrong_code_stays_pending(self, core, alice) -> None:
        """A wrong code is an authentication failure and changes nothing."""
        result = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        wrong = "000000" if core.mfa.current_code(result.secret_key) != "000000" else "111111"

        outcome = core.mfa.verify_enrollment(alice.user_id, wrong)
        assert outcome.error.reason == AuthFailureReason.INVALID_MFA_CODE
        assert core.mfa.get_status(alice.user_id).unwrap() == MFAStatus.PENDING

    def test_verify_without_pending(self, core, alice) -> None:
        """Verification needs a pending enrollment."""
        result = core.mfa.verify_enrollment(alice.user_id, "123456")
        assert result.error_kind == ErrorKind.VALIDATION

    def test_cannot_re_enroll_while_enabled(self, core, alice) -> None:
        """Enabled users must disable first."""
        enroll(core, alice.user_id)
        assert core.mfa.begin_enrollment(alice.user_id).error_kind == ErrorKind.VALIDATION

    def test_restarting_pending_enrollment_replaces_secret(self, core, alice) -> None:
        """A second begin before verifying issues a fresh secret."""
        first = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        second = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        assert first.secret_key != second.secret_key

    def test_disable_needs_current_code(self, core, alice) -> None:
        """Disabling clears the secret and codes."""
        secret = enroll(core, alice.user_id)

        assert core.mfa.disable(alice.user_id, "not-a-code").error_kind == ErrorKind.AUTHENTICATION
        assert core.mfa.disable(alice.user_id, core.mfa.current_code(secret)).unwrap() == MFAStatus.DISABLED

        user = core.db.get(User, alice.user_id)
        assert user.mfa_secret is None
        assert user.backup_codes is None

    def test_unknown_user(self, core) -> None:
        assert core.mfa.get_status(999).error_kind == ErrorKind.NOT_FOUND


@pytest.mark.unit
class TestSecondFactor:
    """Login-time verification."""

    def test_totp_accepted(self, core, alice) -> None:
        secret = enroll(core, alice.user_id)
        result = core.mfa.verify_second_factor(alice.user_id, core.mfa.current_code(secret)).unwrap()
        assert result.method_used == MFAMethod.TOTP

    def test_backup_code_is_single_use(self, core, alice) -> None:
        """A backup code works once and then is gone."""
        started = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        core.mfa.verify_enrollment(alice.user_id, core.mfa.current_code(started.secret_key)).unwrap()
        code = started.backup_codes[0]

        first = core.mfa.verify_second_factor(alice.user_id, code).unwrap()
        assert first.method_used == MFAMethod.BACKUP_CODE
        assert first.backup_codes_remaining == 9

        second = core.mfa.verify_second_factor(alice.user_id, code)
        assert second.error.reason == AuthFailureReason.INVALID_MFA_CODE

    def test_regenerate_replaces_all_codes(self, core, alice) -> None:
        """Old backup codes stop working after regeneration."""
        started = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        secret = started.secret_key
        core.mfa.verify_enrollment(alice.user_id, core.mfa.current_code(secret)).unwrap()

        fresh = core.mfa.regenerate_backup_codes(alice.user_id, core.mfa.current_code(secret), count=5).unwrap()
        assert len(fresh) == 5
        assert not core.mfa.verify_second_factor(alice.user_id, started.backup_codes[0]).success
        assert core.mfa.verify_second_factor(alice.user_id, fresh[0]).success

    def test_regenerate_count_out_of_range(self, core, alice) -> None:
        secret = enroll(core, alice.user_id)
        result = core.mfa.regenerate_backup_codes(alice.user_id, core.mfa.current_code(secret), count=50)
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.error.field == "count"

    def test_code_drift_against_clock(self, core, alice, clock) -> None:
        """A code from one step ago still works; one from three steps ago does not."""
        secret = enroll(core, alice.user_id)
        old_code = core.mfa.current_code(secret)

        clock.advance(seconds=30)
        assert core.mfa.verify_second_factor(alice.user_id, old_code).success

        clock.advance(seconds=60)
        assert not core.mfa.verify_second_factor(alice.user_id, old_code).success
