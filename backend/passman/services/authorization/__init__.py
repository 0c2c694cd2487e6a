"""
Authorization resolver package.

Usage:
    from passman.services.authorization import AuthorizationService

    authz = AuthorizationService(db)
    result = authz.authorize(subject, ActionType.VAULT_READ, ResourceIdentifier.vault(vault_id))
    if not result.allowed:
        ...
"""

from .service import AuthorizationService, get_authorization_service

__all__ = ["AuthorizationService", "get_authorization_service"]
