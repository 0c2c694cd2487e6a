"""
FastAPI dependencies for hosts that expose the core over HTTP
Resolve the bearer token into an authorization subject
"""

import logging

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .exceptions import AuthenticationError, AuthFailureReason, ForbiddenError
from .models.auth_models import TokenClaims
from .models.authorization_models import Subject
from .rbac import Permission
from .services.auth import TokenService
from .utils.logging_security import sanitize_id_for_log

logger = logging.getLogger(__name__)

# auto_error=False so a missing header becomes our own 401 rather than FastAPI's 403
security = HTTPBearer(auto_error=False)


def get_token_service(db: Session = Depends(get_db)) -> TokenService:
    return TokenService(db)


def get_current_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    token_service: TokenService = Depends(get_token_service),
) -> TokenClaims:
    """
    Validate the bearer access token.

    No token means anonymous and yields MISSING_CREDENTIALS; a bad token is
    reported with its own reason so clients know whether to refresh or log in.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required", reason=AuthFailureReason.MISSING_CREDENTIALS)
    return token_service.validate(credentials.credentials).unwrap()


def get_current_subject(claims: TokenClaims = Depends(get_current_claims)) -> Subject:
    return Subject(user_id=claims.user_id, roles=claims.roles, email=claims.email)


def require_permission(permission: Permission):
    """Dependency factory requiring one static permission"""

    def dependency(subject: Subject = Depends(get_current_subject)) -> Subject:
        if not subject.has_permission(permission):
            logger.warning(
                f"User {sanitize_id_for_log(subject.user_id)} lacks {permission.value} for this endpoint"
            )
            raise ForbiddenError("Access denied")
        return subject

    return dependency
