"""
Unit tests for the login flow with and without a second factor.
"""

import pytest

from passman.database import AuditLog
from passman.exceptions import AuthFailureReason, ErrorKind
from passman.models.audit_models import AuditAction


def audit_actions(core, user_id):
    rows = core.db.query(AuditLog.action).filter(AuditLog.user_id == user_id).order_by(AuditLog.id).all()
    return [AuditAction(row[0]) for row in rows]


@pytest.fixture
def alice_secret(core, alice) -> str:
    started = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
    core.mfa.verify_enrollment(alice.user_id, core.mfa.current_code(started.secret_key)).unwrap()
    return started.secret_key


@pytest.mark.unit
class TestPasswordLogin:
    """Users without a second factor."""

    def test_login_returns_tokens(self, core, alice, password) -> None:
        """A successful login yields a usable token pair."""
        result = core.login.login("alice@test.local", password, ip_address="10.0.0.1").unwrap()

        assert result.user_id == alice.user_id
        assert not result.two_factor_enabled
        assert core.tokens.validate(result.tokens.access_token).unwrap().user_id == alice.user_id
        assert result.tokens.token_type == "bearer"

    def test_login_is_audited(self, core, alice, password) -> None:
        core.login.login("alice@test.local", password, ip_address="10.0.0.1", user_agent="pytest").unwrap()

        entry = core.db.query(AuditLog).filter(AuditLog.action == int(AuditAction.USER_LOGGED_IN)).one()
        assert entry.user_id == alice.user_id
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "pytest"

    def test_bad_password(self, core, alice) -> None:
        """A wrong password issues nothing."""
        result = core.login.login("alice@test.local", "Wr0ng!Password")

        assert result.error_kind == ErrorKind.AUTHENTICATION
        assert result.error.reason == AuthFailureReason.INVALID_CREDENTIALS
        assert AuditAction.USER_LOGGED_IN not in audit_actions(core, alice.user_id)

    def test_mfa_code_ignored_when_not_enrolled(self, core, alice, password) -> None:
        """A stray code does not block a user without two-factor."""
        assert core.login.login("alice@test.local", password, mfa_code="123456").success


@pytest.mark.unit
class TestTwoFactorLogin:
    """Users with two-factor enabled present the code in the same call."""

    def test_code_required(self, core, alice, alice_secret, password) -> None:
        """No code means MFA_REQUIRED and no tokens."""
        result = core.login.login("alice@test.local", password)
        assert result.error.reason == AuthFailureReason.MFA_REQUIRED

    def test_valid_totp(self, core, alice, alice_secret, password) -> None:
        result = core.login.login("alice@test.local", password, mfa_code=core.mfa.current_code(alice_secret)).unwrap()
        assert result.two_factor_enabled

    def test_invalid_code_is_audited(self, core, alice, alice_secret, password) -> None:
        """A wrong code fails the login and records the attempt."""
        result = core.login.login("alice@test.local", password, mfa_code="ZZZZ-ZZZZ")

        assert result.error.reason == AuthFailureReason.INVALID_MFA_CODE
        failures = (
            core.db.query(AuditLog)
            .filter(AuditLog.action == int(AuditAction.FAILED_LOGIN_ATTEMPT), AuditLog.user_id == alice.user_id)
            .all()
        )
        assert [f.details for f in failures] == ["Invalid two-factor code"]

    def test_backup_code_login(self, core, alice, password) -> None:
        """A backup code stands in for the TOTP code once."""
        started = core.mfa.begin_enrollment(alice.user_id, include_qr_code=False).unwrap()
        core.mfa.verify_enrollment(alice.user_id, core.mfa.current_code(started.secret_key)).unwrap()
        code = started.backup_codes[3]

        assert core.login.login("alice@test.local", password, mfa_code=code).success
        assert not core.login.login("alice@test.local", password, mfa_code=code).success

    def test_wrong_password_checked_before_code(self, core, alice, alice_secret) -> None:
        """The password failure wins even with a valid code."""
        result = core.login.login("alice@test.local", "Wr0ng!Password", mfa_code=core.mfa.current_code(alice_secret))
        assert result.error.reason == AuthFailureReason.INVALID_CREDENTIALS


@pytest.mark.unit
class TestLogout:
    def test_logout_audits_once(self, core, alice, password) -> None:
        """Logging out the same token twice only records one event."""
        tokens = core.login.login("alice@test.local", password).unwrap().tokens

        assert core.login.logout(alice.user_id, tokens.refresh_token).unwrap() is True
        assert core.login.logout(alice.user_id, "never-issued").unwrap() is False
        assert audit_actions(core, alice.user_id).count(AuditAction.USER_LOGGED_OUT) == 1

    def test_logout_everywhere(self, core, alice, password) -> None:
        """Every session is revoked and the count is recorded."""
        first = core.login.login("alice@test.local", password).unwrap().tokens
        second = core.login.login("alice@test.local", password).unwrap().tokens

        assert core.login.logout_everywhere(alice.user_id).unwrap() == 2
        assert not core.tokens.refresh(first.refresh_token).success
        assert not core.tokens.refresh(second.refresh_token).success

        entry = core.db.query(AuditLog).filter(AuditLog.action == int(AuditAction.USER_LOGGED_OUT)).one()
        assert entry.details == "Revoked 2 session(s)"
