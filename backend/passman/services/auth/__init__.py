"""
Session Management Module

Token issuance, validation, refresh-token rotation and the login flow.

Usage:
    from passman.services.auth import LoginService, TokenService

    result = LoginService(db).login(email, password, mfa_code=code)
    if result.success:
        pair = result.data.tokens

    claims = TokenService(db).validate(pair.access_token).unwrap()
"""

from .login_service import LoginService, get_login_service  # noqa: F401
from .token_service import TokenService, get_token_service  # noqa: F401

__all__ = ["LoginService", "TokenService", "get_login_service", "get_token_service"]
