"""
Unit tests for settings validation, reference data seeding and logging setup.
"""

import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from passman.auth import PasswordManager
from passman.database import Category, Role, User, UserRoleAssignment
from passman.init_roles import DEFAULT_CATEGORIES, DEMO_USERS, init_roles, seed_categories, seed_demo_users
from passman.logging_config import AUDIT_LOGGER_NAME, configure_logging
from passman.rbac import ROLE_PERMISSIONS, UserRole
from passman.utils.logging_security import (
    mask_token_for_log,
    sanitize_for_log,
    sanitize_id_for_log,
    sanitize_username_for_log,
)


@pytest.mark.unit
class TestSettings:
    def test_defaults(self, settings) -> None:
        assert settings.access_token_expire_minutes == 15
        assert settings.refresh_token_expire_days == 7
        assert settings.max_failed_login_attempts == 5
        assert settings.default_role == "VaultOwner"
        assert settings.invitation_expire_hours == 72

    def test_short_secret_rejected(self, settings_factory) -> None:
        with pytest.raises(PydanticValidationError, match="at least 32 characters"):
            settings_factory(secret_key="too-short")

    def test_unknown_default_role(self, settings_factory) -> None:
        with pytest.raises(PydanticValidationError, match="Unknown default role"):
            settings_factory(default_role="Superuser")

    @pytest.mark.parametrize(
        "field", ["access_token_expire_minutes", "refresh_token_expire_days", "lockout_minutes", "invitation_expire_hours"]
    )
    def test_lifetimes_must_be_positive(self, settings_factory, field) -> None:
        with pytest.raises(PydanticValidationError):
            settings_factory(**{field: 0})

    def test_default_page_size_within_cap(self, settings_factory) -> None:
        with pytest.raises(PydanticValidationError, match="between 1 and 50"):
            settings_factory(audit_max_page_size=50, audit_default_page_size=60)

    def test_totp_tolerance_is_bounded(self, settings_factory) -> None:
        with pytest.raises(PydanticValidationError):
            settings_factory(totp_tolerance_steps=11)

    def test_environment_prefix(self, monkeypatch) -> None:
        """Values are read from PASSMAN_* variables."""
        from passman.config import Settings

        monkeypatch.setenv("PASSMAN_SECRET_KEY", "x" * 40)
        monkeypatch.setenv("PASSMAN_LOCKOUT_MINUTES", "30")
        assert Settings(_env_file=None).lockout_minutes == 30


@pytest.mark.unit
class TestSeeding:
    """Roles, categories and demo users are created idempotently."""

    def test_init_roles(self, db_session) -> None:
        summary = init_roles(db_session)

        assert set(summary) == {role.value for role in UserRole}
        owner = db_session.query(Role).filter(Role.name == "VaultOwner").one()
        assert owner.permissions == sorted(p.value for p in ROLE_PERMISSIONS[UserRole.VAULT_OWNER])

    def test_init_roles_twice_updates_in_place(self, db_session) -> None:
        init_roles(db_session)
        init_roles(db_session)
        assert db_session.query(Role).count() == len(UserRole)

    def test_seed_categories(self, db_session) -> None:
        assert seed_categories(db_session) == len(DEFAULT_CATEGORIES)
        assert seed_categories(db_session) == 0
        assert db_session.query(Category).count() == len(DEFAULT_CATEGORIES)

    def test_seed_demo_users(self, db_session, settings, password) -> None:
        manager = PasswordManager(settings)
        assert seed_demo_users(db_session, password, manager) == len(DEMO_USERS)
        assert seed_demo_users(db_session, password, manager) == 0

        reader = db_session.query(User).filter(User.email == "reader@passman.local").one()
        assert reader.email_confirmed
        assert manager.verify_password(password, reader.password_hash)
        roles = [a.role for a in db_session.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == reader.id)]
        assert roles == ["VaultReader"]


@pytest.mark.unit
class TestLogSanitizers:
    def test_strips_line_breaks(self) -> None:
        """Injected newlines cannot forge a second log record."""
        assert sanitize_for_log("bob\r\nINFO - admin logged in") == "bobINFO - admin logged in"

    def test_truncates(self) -> None:
        assert sanitize_for_log("a" * 150) == "a" * 100 + "..."

    def test_empty_after_cleaning(self) -> None:
        assert sanitize_for_log("<>{}") == "[sanitized]"
        assert sanitize_for_log(None) == "null"

    def test_usernames(self) -> None:
        assert sanitize_username_for_log("alice@test.local") == "alice@test.local"
        assert sanitize_username_for_log("") == "[no_username]"

    def test_ids(self) -> None:
        assert sanitize_id_for_log(42) == "42"
        assert sanitize_id_for_log("3f2504e0-4f89-11d3-9a0c-0305e82c3301") == "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
        assert sanitize_id_for_log("1; DROP") == "1 DROP"
        assert sanitize_id_for_log(None) == "[no_id]"

    def test_mask_token(self) -> None:
        assert mask_token_for_log("abcdefghijklmnop") == "abcd...op"
        assert mask_token_for_log("short") == "****"
        assert mask_token_for_log(None) == "[no_token]"


@pytest.mark.unit
class TestConfigureLogging:
    def test_audit_logger_writes_to_file(self, settings_factory, tmp_path) -> None:
        log_file = tmp_path / "audit.log"
        configure_logging(settings_factory(log_file=str(log_file), log_level="debug"))

        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        try:
            audit_logger.info("Login succeeded")
            for handler in audit_logger.handlers:
                handler.flush()
            assert "passman.audit - INFO - Login succeeded" in log_file.read_text()
        finally:
            for handler in list(audit_logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    audit_logger.removeHandler(handler)
                    handler.close()
