"""
Identity Store for PassMan
User registration, password authentication with lockout, profile
self-service, account deletion and role assignment
"""

import logging
import re
from datetime import timedelta
from typing import Iterable, List, Optional

import email_validator
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic import validator
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import PasswordManager
from ..config import Settings, get_settings
from ..database import (
    Clock,
    Credential,
    CredentialTag,
    RefreshToken,
    ShareInvitation,
    Tag,
    User,
    UserRoleAssignment,
    Vault,
    VaultShare,
    utcnow,
)
from ..exceptions import (
    AuthenticationError,
    AuthFailureReason,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from ..models.audit_models import AuditAction
from ..models.auth_models import UserView
from ..models.authorization_models import Subject
from ..rbac import ActionType, RBACManager
from ..utils.logging_security import sanitize_id_for_log, sanitize_username_for_log
from .audit_service import AuditService
from .authorization import AuthorizationService
from .base import service_operation

logger = logging.getLogger(__name__)

# Private-network addresses such as user@corp.local are valid account emails
if "local" in email_validator.SPECIAL_USE_DOMAIN_NAMES:
    email_validator.SPECIAL_USE_DOMAIN_NAMES.remove("local")

PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,100}$")
USER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._@+-]{3,100}$")


def normalize_email(email: Optional[str]) -> str:
    """Trim and case-fold an email so lookups are case-insensitive"""
    return (email or "").strip().casefold()


def check_email(email: Optional[str]) -> str:
    """Syntax-check an address with email-validator; no DNS lookups"""
    normalized = normalize_email(email)
    if not normalized or len(normalized) > 256:
        raise ValueError("A valid email address is required")
    try:
        validated = validate_email(normalized, check_deliverability=False)
    except EmailNotValidError:
        raise ValueError("A valid email address is required")
    return validated.normalized.casefold()


def check_password_strength(password: Optional[str]) -> str:
    if not password or not PASSWORD_PATTERN.match(password):
        raise ValueError(
            "Password must be 8 to 100 characters and include uppercase, lowercase, digit, "
            "and non-alphanumeric characters"
        )
    return password


def check_user_name(user_name: Optional[str]) -> Optional[str]:
    if user_name is None:
        return None
    user_name = user_name.strip()
    if not USER_NAME_PATTERN.match(user_name):
        raise ValueError("User name must be 3 to 100 letters, digits or . _ @ + -")
    return user_name


def check_phone_number(phone_number: Optional[str]) -> Optional[str]:
    if phone_number is None:
        return None
    phone_number = phone_number.strip()
    if len(phone_number) > 32:
        raise ValueError("Phone number cannot exceed 32 characters")
    return phone_number


class RegistrationRequest(BaseModel):
    """Validated registration input"""

    email: str
    password: str
    user_name: Optional[str] = None
    phone_number: Optional[str] = None

    @validator("email")
    def email_must_be_valid(cls, v):
        return check_email(v)

    @validator("password")
    def password_must_be_strong(cls, v):
        return check_password_strength(v)

    @validator("user_name")
    def user_name_must_be_valid(cls, v):
        return check_user_name(v)

    @validator("phone_number")
    def phone_number_must_be_short(cls, v):
        return check_phone_number(v)


class ProfileUpdateRequest(BaseModel):
    """Validated profile changes; None leaves a field untouched"""

    email: Optional[str] = None
    user_name: Optional[str] = None
    phone_number: Optional[str] = None

    @validator("email")
    def email_must_be_valid(cls, v):
        return check_email(v) if v is not None else v

    @validator("user_name")
    def user_name_must_be_valid(cls, v):
        return check_user_name(v)

    @validator("phone_number")
    def phone_number_must_be_short(cls, v):
        return check_phone_number(v)


class IdentityService:
    """Manages users, their password hashes and their roles"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        password_manager: Optional[PasswordManager] = None,
        audit: Optional[AuditService] = None,
        authorizer: Optional[AuthorizationService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.password_manager = password_manager or PasswordManager(self.settings)
        self.authorizer = authorizer or AuthorizationService(db)
        self.audit = audit or AuditService(db, self.settings, self.authorizer, clock)
        self.clock = clock

    @service_operation
    def register(
        self,
        email: str,
        password: str,
        user_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Create a user holding the configured default role"""
        try:
            request = RegistrationRequest(
                email=email or "", password=password or "", user_name=user_name, phone_number=phone_number
            )
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e)

        if self._find_by_email(request.email) is not None:
            raise ConflictError("Email is already registered", field="email")
        if request.user_name and self._find_by_user_name(request.user_name) is not None:
            raise ConflictError("User name is already taken", field="user_name")

        now = self.clock()
        user = User(
            email=request.email,
            user_name=request.user_name,
            phone_number=request.phone_number,
            password_hash=self.password_manager.hash_password(request.password),
            email_confirmed=False,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(user)
            self.db.flush()
            self.db.add(UserRoleAssignment(user_id=user.id, role=self.settings.default_role, assigned_at=now))
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same address
            self.db.rollback()
            raise ConflictError("Email is already registered", field="email")

        logger.info(f"Registered user {sanitize_id_for_log(user.id)} ({sanitize_username_for_log(user.email)})")
        self.audit.log(
            user.id,
            AuditAction.USER_REGISTERED,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user.id,
        )
        return user

    @service_operation
    def authenticate(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """
        Verify email and password.

        Repeated failures lock the account for ``lockout_minutes``. A correct
        password whose hash uses an outdated work factor is rehashed and saved.
        """
        normalized = normalize_email(email)
        if not normalized or not password:
            raise AuthenticationError("Invalid email or password")

        user = self._find_by_email(normalized)
        if user is None:
            self.password_manager.dummy_verify()
            self._record_failure(None, ip_address, user_agent, "Unknown account")
            raise AuthenticationError("Invalid email or password")

        now = self.clock()
        if user.locked_until is not None and user.locked_until > now:
            logger.warning(f"Login attempt for locked account {sanitize_id_for_log(user.id)}")
            raise AuthenticationError(
                "Account is temporarily locked", reason=AuthFailureReason.ACCOUNT_LOCKED
            )

        verified, new_hash = self.password_manager.verify_and_update(password, user.password_hash)
        if not verified:
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
            locked = user.failed_login_attempts >= self.settings.max_failed_login_attempts
            if locked:
                user.locked_until = now + timedelta(minutes=self.settings.lockout_minutes)
                user.failed_login_attempts = 0
            self.db.commit()

            self._record_failure(user.id, ip_address, user_agent, "Account locked" if locked else "Bad password")
            if locked:
                logger.warning(f"Locked account {sanitize_id_for_log(user.id)} after repeated failures")
                raise AuthenticationError(
                    "Account is temporarily locked", reason=AuthFailureReason.ACCOUNT_LOCKED
                )
            raise AuthenticationError("Invalid email or password")

        if self.settings.require_email_confirmation and not user.email_confirmed:
            raise AuthenticationError(
                "Email address has not been confirmed", reason=AuthFailureReason.EMAIL_UNCONFIRMED
            )

        if new_hash:
            user.password_hash = new_hash
            logger.info(f"Rehashed password for user {sanitize_id_for_log(user.id)} with current work factor")

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        self.db.commit()
        return user

    @service_operation
    def confirm_email(self, user_id: int) -> User:
        user = self._get_user(user_id)
        user.email_confirmed = True
        self.db.commit()
        return user

    @service_operation
    def get_user(self, user_id: int) -> User:
        return self._get_user(user_id)

    @service_operation
    def get_user_by_email(self, email: str) -> User:
        user = self._find_by_email(normalize_email(email))
        if user is None:
            raise NotFoundError("User not found")
        return user

    @service_operation
    def get_user_view(self, user_id: int) -> UserView:
        user = self._get_user(user_id)
        return UserView(
            id=user.id,
            email=user.email,
            user_name=user.user_name,
            phone_number=user.phone_number,
            email_confirmed=user.email_confirmed,
            two_factor_enabled=user.two_factor_enabled,
            roles=self.get_roles(user.id),
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )

    def get_roles(self, user_id: int) -> List[str]:
        rows = (
            self.db.query(UserRoleAssignment.role)
            .filter(UserRoleAssignment.user_id == user_id)
            .order_by(UserRoleAssignment.role)
            .all()
        )
        return [row[0] for row in rows]

    @service_operation
    def build_subject(self, user_id: int) -> Subject:
        """Current roles of a user as an authorization subject"""
        user = self._get_user(user_id)
        return Subject(user_id=user.id, roles=self.get_roles(user.id), email=user.email)

    @service_operation
    def update_profile(
        self,
        actor_user_id: int,
        user_id: int,
        email: Optional[str] = None,
        user_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        """Self-service profile update"""
        if actor_user_id != user_id:
            raise ForbiddenError("Users can only update their own profile")

        try:
            request = ProfileUpdateRequest(email=email, user_name=user_name, phone_number=phone_number)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e)

        user = self._get_user(user_id)
        if request.email is not None and request.email != user.email:
            existing = self._find_by_email(request.email)
            if existing is not None and existing.id != user.id:
                raise ConflictError("Email is already registered", field="email")
            user.email = request.email
            user.email_confirmed = False
        if request.user_name is not None and request.user_name != user.user_name:
            existing = self._find_by_user_name(request.user_name)
            if existing is not None and existing.id != user.id:
                raise ConflictError("User name is already taken", field="user_name")
            user.user_name = request.user_name
        if request.phone_number is not None:
            user.phone_number = request.phone_number or None

        user.updated_at = self.clock()
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Email or user name is already in use")
        return user

    @service_operation
    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Replace the password and revoke every refresh token of the user"""
        user = self._get_user(user_id)
        if not self.password_manager.verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        try:
            check_password_strength(new_password)
        except ValueError as e:
            raise ValidationError(str(e), field="new_password")

        now = self.clock()
        user.password_hash = self.password_manager.hash_password(new_password)
        user.updated_at = now
        self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user.id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        self.audit.log(
            user.id,
            AuditAction.USER_PASSWORD_CHANGED,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user.id,
        )
        return True

    @service_operation
    def delete_account(self, actor_user_id: int, user_id: int, password: str) -> bool:
        """
        Hard-delete a user and everything they own.

        Owned vaults go with their credentials, shares and invitations. Shares
        granted to the user and the user's tags are removed too. Audit entries
        stay, since they reference users and vaults by id only.
        """
        if actor_user_id != user_id:
            raise ForbiddenError("Users can only delete their own account")

        user = self._get_user(user_id)
        if not self.password_manager.verify_password(password, user.password_hash):
            raise AuthenticationError("Password is incorrect")

        vault_ids = [row[0] for row in self.db.query(Vault.id).filter(Vault.owner_id == user.id).all()]
        tag_ids = [row[0] for row in self.db.query(Tag.id).filter(Tag.user_id == user.id).all()]

        if vault_ids:
            credential_ids = [
                row[0] for row in self.db.query(Credential.id).filter(Credential.vault_id.in_(vault_ids)).all()
            ]
            if credential_ids:
                self.db.query(CredentialTag).filter(CredentialTag.credential_id.in_(credential_ids)).delete(
                    synchronize_session=False
                )
                self.db.query(Credential).filter(Credential.id.in_(credential_ids)).delete(synchronize_session=False)
            self.db.query(VaultShare).filter(VaultShare.vault_id.in_(vault_ids)).delete(synchronize_session=False)
            self.db.query(ShareInvitation).filter(ShareInvitation.vault_id.in_(vault_ids)).delete(
                synchronize_session=False
            )
            self.db.query(Vault).filter(Vault.id.in_(vault_ids)).delete(synchronize_session=False)

        if tag_ids:
            self.db.query(CredentialTag).filter(CredentialTag.tag_id.in_(tag_ids)).delete(synchronize_session=False)
            self.db.query(Tag).filter(Tag.id.in_(tag_ids)).delete(synchronize_session=False)

        self.db.query(VaultShare).filter(VaultShare.user_id == user.id).delete(synchronize_session=False)
        self.db.query(RefreshToken).filter(RefreshToken.user_id == user.id).delete(synchronize_session=False)
        self.db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user.id).delete(
            synchronize_session=False
        )
        self.db.delete(user)
        self.db.commit()

        logger.info(
            f"Deleted account {sanitize_id_for_log(user_id)} with {len(vault_ids)} owned vault(s)"
        )
        return True

    @service_operation
    def assign_roles(
        self,
        actor: Subject,
        user_id: int,
        roles: Iterable,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        """Replace a user's role set; requires ``role.manage``"""
        self.authorizer.require(actor, ActionType.ROLE_MANAGE)

        parsed = []
        for role in roles or []:
            catalog_role = RBACManager.parse_role(role)
            if catalog_role is None:
                raise ValidationError(f"Unknown role: {role}", field="roles")
            if catalog_role.value not in parsed:
                parsed.append(catalog_role.value)
        if not parsed:
            raise ValidationError("At least one role is required", field="roles")

        user = self._get_user(user_id)
        now = self.clock()
        self.db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user.id).delete(
            synchronize_session=False
        )
        for role in parsed:
            self.db.add(UserRoleAssignment(user_id=user.id, role=role, assigned_by=actor.user_id, assigned_at=now))
        self.db.commit()

        logger.info(f"User {sanitize_id_for_log(actor.user_id)} set roles of {sanitize_id_for_log(user.id)}")
        self.audit.log(
            actor.user_id,
            AuditAction.USER_ROLE_CHANGED,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user.id,
            details=f"Roles: {', '.join(parsed)}",
        )
        return parsed

    def _get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _find_by_email(self, normalized_email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == normalized_email).first()

    def _find_by_user_name(self, user_name: str) -> Optional[User]:
        return self.db.query(User).filter(User.user_name == user_name).first()

    def _record_failure(
        self, user_id: Optional[int], ip_address: Optional[str], user_agent: Optional[str], details: str
    ) -> None:
        self.audit.log(
            user_id,
            AuditAction.FAILED_LOGIN_ATTEMPT,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user_id,
            details=details,
        )


def get_identity_service(db: Session) -> IdentityService:
    """Factory function to get identity service instance"""
    return IdentityService(db)
