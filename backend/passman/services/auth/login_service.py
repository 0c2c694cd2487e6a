"""
Login orchestration
Password check, optional second factor, then a fresh token pair
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...config import Settings, get_settings
from ...database import Clock, utcnow
from ...exceptions import AuthenticationError, AuthFailureReason
from ...models.audit_models import AuditAction
from ...models.auth_models import LoginResult
from ...utils.logging_security import sanitize_id_for_log
from ..audit_service import AuditService
from ..base import service_operation
from ..identity_service import IdentityService
from ..mfa_service import MFAMethod, MFAService
from .token_service import TokenService

logger = logging.getLogger(__name__)


class LoginService:
    """
    Stateless login flow.

    A user with two-factor enabled must present the code in the same call;
    nothing is remembered between a password step and a code step.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        identity: Optional[IdentityService] = None,
        tokens: Optional[TokenService] = None,
        mfa: Optional[MFAService] = None,
        audit: Optional[AuditService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditService(db, self.settings, clock=clock)
        self.identity = identity or IdentityService(db, self.settings, audit=self.audit, clock=clock)
        self.tokens = tokens or TokenService(db, self.settings, identity=self.identity, clock=clock)
        self.mfa = mfa or MFAService(db, self.settings, clock=clock)

    @service_operation
    def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.identity.authenticate(email, password, ip_address, user_agent).unwrap()

        if user.two_factor_enabled:
            if not mfa_code:
                raise AuthenticationError("Two-factor code required", reason=AuthFailureReason.MFA_REQUIRED)

            second_factor = self.mfa.verify_second_factor(user.id, mfa_code)
            if not second_factor.success:
                self.audit.log(
                    user.id,
                    AuditAction.FAILED_LOGIN_ATTEMPT,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    entity_type="User",
                    entity_id=user.id,
                    details="Invalid two-factor code",
                )
                raise second_factor.error
            if second_factor.data.method_used == MFAMethod.BACKUP_CODE:
                logger.warning(
                    f"User {sanitize_id_for_log(user.id)} logged in with a backup code, "
                    f"{second_factor.data.backup_codes_remaining} remaining"
                )

        tokens = self.tokens.issue_token_pair(user).unwrap()

        logger.info(f"User {sanitize_id_for_log(user.id)} logged in")
        self.audit.log(
            user.id,
            AuditAction.USER_LOGGED_IN,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user.id,
        )
        return LoginResult(
            user_id=user.id,
            email=user.email,
            user_name=user.user_name,
            two_factor_enabled=user.two_factor_enabled,
            tokens=tokens,
        )

    @service_operation
    def logout(
        self,
        user_id: int,
        refresh_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke the session's refresh token; unknown tokens are a no-op"""
        revoked = self.tokens.logout(user_id, refresh_token).unwrap()
        if revoked:
            self.audit.log(
                user_id,
                AuditAction.USER_LOGGED_OUT,
                ip_address=ip_address,
                user_agent=user_agent,
                entity_type="User",
                entity_id=user_id,
            )
        return revoked

    @service_operation
    def logout_everywhere(
        self,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = self.tokens.revoke_all(user_id).unwrap()
        self.audit.log(
            user_id,
            AuditAction.USER_LOGGED_OUT,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_type="User",
            entity_id=user_id,
            details=f"Revoked {revoked} session(s)",
        )
        return revoked


def get_login_service(db: Session) -> LoginService:
    """Factory function to get login service instance"""
    return LoginService(db)
