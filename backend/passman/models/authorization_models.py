"""
Authorization Models for PassMan
Subjects, resource identifiers and decisions exchanged with the resolver
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional

from ..database import utcnow
from ..rbac import ActionType, Permission, RBACManager, SharePermission


class ResourceType(str, Enum):
    """Types of resources that can be protected by authorization"""

    VAULT = "vault"
    CREDENTIAL = "credential"
    TAG = "tag"
    AUDIT_LOG = "audit_log"


class AuthorizationDecision(str, Enum):
    """Final authorization decision"""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class ResourceIdentifier:
    """Identifies a specific resource instance for authorization"""

    resource_type: ResourceType
    resource_id: int

    @classmethod
    def vault(cls, vault_id: int) -> "ResourceIdentifier":
        return cls(ResourceType.VAULT, vault_id)

    @classmethod
    def credential(cls, credential_id: int) -> "ResourceIdentifier":
        return cls(ResourceType.CREDENTIAL, credential_id)

    @classmethod
    def tag(cls, tag_id: int) -> "ResourceIdentifier":
        return cls(ResourceType.TAG, tag_id)

    @classmethod
    def audit_entry(cls, entry_id: int) -> "ResourceIdentifier":
        return cls(ResourceType.AUDIT_LOG, entry_id)


@dataclass
class Subject:
    """An authenticated caller and the roles it holds.

    The effective permission set is the union over all roles and is computed
    once per subject.
    """

    user_id: int
    roles: List[str] = field(default_factory=list)
    email: Optional[str] = None
    permissions: FrozenSet[Permission] = field(init=False)

    def __post_init__(self) -> None:
        self.roles = [getattr(role, "value", role) for role in self.roles]
        self.permissions = RBACManager.get_effective_permissions(self.roles)

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions


@dataclass
class ResourceContext:
    """Ownership facts the resolver needs about one resource instance"""

    owner_ids: FrozenSet[int]
    vault_id: Optional[int] = None
    is_deleted: bool = False


@dataclass
class AuthorizationResult:
    """Result of an authorization check"""

    decision: AuthorizationDecision
    action: ActionType
    reason: str
    resource: Optional[ResourceIdentifier] = None
    granted_by: Optional[str] = None  # permission, owner, share or override
    share_tier: Optional[SharePermission] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def allowed(self) -> bool:
        return self.decision == AuthorizationDecision.ALLOW

    @classmethod
    def allow(cls, action: ActionType, granted_by: str, resource=None, share_tier=None) -> "AuthorizationResult":
        return cls(
            decision=AuthorizationDecision.ALLOW,
            action=action,
            reason=f"granted by {granted_by}",
            resource=resource,
            granted_by=granted_by,
            share_tier=share_tier,
        )

    @classmethod
    def deny(cls, action: ActionType, reason: str, resource=None) -> "AuthorizationResult":
        return cls(decision=AuthorizationDecision.DENY, action=action, reason=reason, resource=resource)
