"""Data transfer objects exchanged with PassMan services."""

from .audit_models import AuditAction, AuditLogEntryView, AuditLogFilter, PaginatedAuditResult
from .auth_models import LoginResult, MFAEnrollmentResult, MFAStatus, TokenClaims, TokenPair, UserView
from .authorization_models import (
    AuthorizationDecision,
    AuthorizationResult,
    ResourceContext,
    ResourceIdentifier,
    ResourceType,
    Subject,
)
from .sharing_models import InvitationInfo, ShareInfo
from .vault_models import CredentialView, TagView, VaultView

__all__ = [
    "AuditAction",
    "AuditLogEntryView",
    "AuditLogFilter",
    "AuthorizationDecision",
    "AuthorizationResult",
    "CredentialView",
    "InvitationInfo",
    "LoginResult",
    "MFAEnrollmentResult",
    "MFAStatus",
    "PaginatedAuditResult",
    "ResourceContext",
    "ResourceIdentifier",
    "ResourceType",
    "ShareInfo",
    "Subject",
    "TagView",
    "TokenClaims",
    "TokenPair",
    "UserView",
]
