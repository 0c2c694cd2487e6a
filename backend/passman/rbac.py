"""
Role-Based Access Control (RBAC) Catalog for PassMan
Defines permissions, roles, share tiers and the action policy table
"""
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    """System permissions"""
    # Vaults
    VAULT_READ = "vault.read"
    VAULT_CREATE = "vault.create"
    VAULT_UPDATE = "vault.update"
    VAULT_DELETE = "vault.delete"
    VAULT_SHARE = "vault.share"

    # Credentials
    CREDENTIAL_READ = "credential.read"
    CREDENTIAL_CREATE = "credential.create"
    CREDENTIAL_UPDATE = "credential.update"
    CREDENTIAL_DELETE = "credential.delete"

    # Audit and administration
    AUDIT_READ = "audit.read"
    USER_MANAGE = "user.manage"
    ROLE_MANAGE = "role.manage"
    SYSTEM_HEALTH = "system.health"


class UserRole(str, Enum):
    """Canonical roles shipped with the core"""
    ADMIN = "Admin"
    SECURITY_AUDITOR = "SecurityAuditor"
    VAULT_OWNER = "VaultOwner"
    VAULT_READER = "VaultReader"


class SharePermission(IntEnum):
    """Vault share tiers, totally ordered: VIEW < EDIT < ADMIN"""
    VIEW = 0
    EDIT = 1
    ADMIN = 2

    @classmethod
    def parse(cls, value) -> "SharePermission":
        """Accept a tier member, its numeric value or its case-insensitive name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown share permission: {value}")
        return cls(value)


_VAULT_PERMISSIONS = frozenset(
    {
        Permission.VAULT_READ,
        Permission.VAULT_CREATE,
        Permission.VAULT_UPDATE,
        Permission.VAULT_DELETE,
        Permission.VAULT_SHARE,
    }
)

_CREDENTIAL_PERMISSIONS = frozenset(
    {
        Permission.CREDENTIAL_READ,
        Permission.CREDENTIAL_CREATE,
        Permission.CREDENTIAL_UPDATE,
        Permission.CREDENTIAL_DELETE,
    }
)

# Role permission mappings (read-only)
ROLE_PERMISSIONS: Mapping[UserRole, FrozenSet[Permission]] = MappingProxyType(
    {
        UserRole.ADMIN: frozenset(Permission),
        UserRole.SECURITY_AUDITOR: frozenset(
            {
                Permission.AUDIT_READ,
                Permission.VAULT_READ,
                Permission.CREDENTIAL_READ,
                Permission.SYSTEM_HEALTH,
            }
        ),
        UserRole.VAULT_OWNER: _VAULT_PERMISSIONS | _CREDENTIAL_PERMISSIONS,
        UserRole.VAULT_READER: frozenset({Permission.VAULT_READ, Permission.CREDENTIAL_READ}),
    }
)

ROLE_DESCRIPTIONS: Mapping[UserRole, str] = MappingProxyType(
    {
        UserRole.ADMIN: "Full access to every vault, credential, user and audit operation",
        UserRole.SECURITY_AUDITOR: "Read-only access plus the organisation-wide audit trail",
        UserRole.VAULT_OWNER: "Full management of owned vaults and their credentials",
        UserRole.VAULT_READER: "Read-only access to vaults and credentials",
    }
)


class ActionType(str, Enum):
    """Operations the authorization resolver can be asked about"""
    VAULT_CREATE = "vault.create"
    VAULT_READ = "vault.read"
    VAULT_UPDATE = "vault.update"
    VAULT_DELETE = "vault.delete"
    VAULT_SHARE = "vault.share"
    CREDENTIAL_CREATE = "credential.create"
    CREDENTIAL_READ = "credential.read"
    CREDENTIAL_UPDATE = "credential.update"
    CREDENTIAL_DELETE = "credential.delete"
    TAG_CREATE = "tag.create"
    TAG_READ = "tag.read"
    TAG_UPDATE = "tag.update"
    TAG_DELETE = "tag.delete"
    AUDIT_VAULT_READ = "audit.vault_read"
    AUDIT_ENTRY_READ = "audit.entry_read"
    AUDIT_READ_ALL = "audit.read_all"
    USER_MANAGE = "user.manage"
    ROLE_MANAGE = "role.manage"
    SYSTEM_HEALTH = "system.health"


@dataclass(frozen=True)
class ActionPolicy:
    """What an action demands of the subject.

    ``permission`` is the static role permission (None means any
    authenticated subject). ``min_tier`` is the share tier a non-owner needs;
    None on a resource action means owner only. ``override`` is the
    permission that grants cross-user access when ownership and sharing fail.
    """

    permission: Optional[Permission]
    targets_resource: bool = False
    min_tier: Optional[SharePermission] = None
    override: Optional[Permission] = None
    reads_history: bool = False


ACTION_POLICIES: Mapping[ActionType, ActionPolicy] = MappingProxyType(
    {
        ActionType.VAULT_CREATE: ActionPolicy(Permission.VAULT_CREATE),
        ActionType.VAULT_READ: ActionPolicy(
            Permission.VAULT_READ, targets_resource=True, min_tier=SharePermission.VIEW
        ),
        ActionType.VAULT_UPDATE: ActionPolicy(Permission.VAULT_UPDATE, targets_resource=True),
        ActionType.VAULT_DELETE: ActionPolicy(Permission.VAULT_DELETE, targets_resource=True),
        ActionType.VAULT_SHARE: ActionPolicy(
            Permission.VAULT_SHARE, targets_resource=True, min_tier=SharePermission.ADMIN
        ),
        ActionType.CREDENTIAL_CREATE: ActionPolicy(
            Permission.CREDENTIAL_CREATE, targets_resource=True, min_tier=SharePermission.EDIT
        ),
        ActionType.CREDENTIAL_READ: ActionPolicy(
            Permission.CREDENTIAL_READ, targets_resource=True, min_tier=SharePermission.VIEW
        ),
        ActionType.CREDENTIAL_UPDATE: ActionPolicy(
            Permission.CREDENTIAL_UPDATE, targets_resource=True, min_tier=SharePermission.EDIT
        ),
        ActionType.CREDENTIAL_DELETE: ActionPolicy(
            Permission.CREDENTIAL_DELETE, targets_resource=True, min_tier=SharePermission.EDIT
        ),
        # Tags are private to their owner and ride on the credential permissions
        ActionType.TAG_CREATE: ActionPolicy(Permission.CREDENTIAL_CREATE),
        ActionType.TAG_READ: ActionPolicy(Permission.CREDENTIAL_READ, targets_resource=True),
        ActionType.TAG_UPDATE: ActionPolicy(Permission.CREDENTIAL_UPDATE, targets_resource=True),
        ActionType.TAG_DELETE: ActionPolicy(Permission.CREDENTIAL_DELETE, targets_resource=True),
        ActionType.AUDIT_VAULT_READ: ActionPolicy(
            None,
            targets_resource=True,
            min_tier=SharePermission.VIEW,
            override=Permission.AUDIT_READ,
            reads_history=True,
        ),
        ActionType.AUDIT_ENTRY_READ: ActionPolicy(
            None, targets_resource=True, override=Permission.AUDIT_READ, reads_history=True
        ),
        ActionType.AUDIT_READ_ALL: ActionPolicy(Permission.AUDIT_READ),
        ActionType.USER_MANAGE: ActionPolicy(Permission.USER_MANAGE),
        ActionType.ROLE_MANAGE: ActionPolicy(Permission.ROLE_MANAGE),
        ActionType.SYSTEM_HEALTH: ActionPolicy(Permission.SYSTEM_HEALTH),
    }
)


class RBACManager:
    """Role-based access control manager"""

    @staticmethod
    def parse_role(role) -> Optional[UserRole]:
        """Resolve a role name to a catalog role, or None when unknown."""
        if isinstance(role, UserRole):
            return role
        try:
            return UserRole(role)
        except ValueError:
            return None

    @staticmethod
    def get_role_permissions(user_role: UserRole) -> FrozenSet[Permission]:
        """Get all permissions for a role"""
        return ROLE_PERMISSIONS.get(user_role, frozenset())

    @staticmethod
    def get_effective_permissions(roles: Iterable) -> FrozenSet[Permission]:
        """Union of the permissions of every assigned role.

        Unknown role names contribute nothing.
        """
        effective = set()
        for role in roles:
            parsed = RBACManager.parse_role(role)
            if parsed is None:
                logger.warning(f"Ignoring unknown role in assignment: {role!r}")
                continue
            effective |= ROLE_PERMISSIONS[parsed]
        return frozenset(effective)

    @staticmethod
    def has_permission(roles: Iterable, required_permission: Permission) -> bool:
        """Check if any of the roles grants a specific permission"""
        return required_permission in RBACManager.get_effective_permissions(roles)

    @staticmethod
    def has_any_permission(roles: Iterable, required_permissions: Iterable[Permission]) -> bool:
        """Check if the roles grant any of the required permissions"""
        effective = RBACManager.get_effective_permissions(roles)
        return any(perm in effective for perm in required_permissions)

    @staticmethod
    def has_all_permissions(roles: Iterable, required_permissions: Iterable[Permission]) -> bool:
        """Check if the roles grant all required permissions"""
        effective = RBACManager.get_effective_permissions(roles)
        return all(perm in effective for perm in required_permissions)

    @staticmethod
    def get_action_policy(action: ActionType) -> ActionPolicy:
        """Look up the policy for an action; unknown actions are a programming error."""
        return ACTION_POLICIES[ActionType(action)]


def validate_role_catalog(
    role_permissions: Optional[Mapping] = None,
    action_policies: Optional[Mapping] = None,
) -> Dict[str, int]:
    """
    Check role and action definitions against the permission catalog.

    Called at startup. Raises ValueError naming the first offending entry.

    Returns:
        Dict mapping each role name to the size of its permission set
    """
    role_permissions = ROLE_PERMISSIONS if role_permissions is None else role_permissions
    action_policies = ACTION_POLICIES if action_policies is None else action_policies
    catalog = set(Permission)

    for role in UserRole:
        if role not in role_permissions:
            raise ValueError(f"Role {role.value} has no permission set")

    summary = {}
    for role, permissions in role_permissions.items():
        for permission in permissions:
            if permission not in catalog:
                raise ValueError(f"Role {role} grants unknown permission {permission!r}")
        summary[getattr(role, "value", str(role))] = len(permissions)

    for action in ActionType:
        if action not in action_policies:
            raise ValueError(f"Action {action.value} has no policy")

    for action, policy in action_policies.items():
        for permission in (policy.permission, policy.override):
            if permission is not None and permission not in catalog:
                raise ValueError(f"Action {action} refers to unknown permission {permission!r}")
        if policy.min_tier is not None and not policy.targets_resource:
            raise ValueError(f"Action {action} sets a share tier but targets no resource")

    return summary
