"""
Authorization Resolver
Decides Allow or Deny for (subject, action, resource) by combining the
static role permissions with ownership and vault-share state

Evaluation order:
1. The subject's effective permissions must contain the action's static
   permission, otherwise Deny without touching the store.
2. Actions without a resource instance stop here with Allow.
3. For a resource instance: the owner (directly, through the parent vault,
   or as author of an audit entry) is allowed; a vault share at or above
   the action's tier is allowed; the action's override permission is
   allowed; anything else is denied.
4. Soft-deleted vaults and their credentials are denied except for audit
   reads that explicitly ask to include deleted history.
"""

import logging
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from ...database import AuditLog, Credential, Tag
from ...exceptions import ForbiddenError, TransientError
from ...models.authorization_models import (
    AuthorizationResult,
    ResourceContext,
    ResourceIdentifier,
    ResourceType,
    Subject,
)
from ...rbac import ActionType, RBACManager
from ...utils.logging_security import sanitize_id_for_log
from ..share_store import VaultShareStore

logger = logging.getLogger(__name__)


class AuthorizationService:
    """Stateless resolver; safe to call concurrently with separate sessions"""

    def __init__(self, db: Session, share_store: Optional[VaultShareStore] = None):
        self.db = db
        self.share_store = share_store or VaultShareStore(db)

    def authorize(
        self,
        subject: Subject,
        action: ActionType,
        resource: Optional[ResourceIdentifier] = None,
        include_deleted: bool = False,
    ) -> AuthorizationResult:
        """
        Check whether a subject may perform an action.

        Args:
            subject: Authenticated caller with its roles
            action: Requested action
            resource: Target instance, or None for a pure role check
            include_deleted: Let audit reads resolve soft-deleted vaults

        Returns:
            AuthorizationResult: Allow or Deny with a reason

        Raises:
            TransientError: The store timed out while resolving ownership
        """
        action = ActionType(action)
        policy = RBACManager.get_action_policy(action)

        if policy.permission is not None and not subject.has_permission(policy.permission):
            logger.warning(
                f"Denied {action.value} for user {sanitize_id_for_log(subject.user_id)}: "
                f"missing permission {policy.permission.value}"
            )
            return AuthorizationResult.deny(action, f"missing permission {policy.permission.value}", resource)

        if not policy.targets_resource or resource is None:
            granted_by = "permission" if policy.permission is not None else "authentication"
            return AuthorizationResult.allow(action, granted_by, resource)

        try:
            context = self._load_context(resource)
            if context is None:
                return AuthorizationResult.deny(action, "resource not found", resource)

            if context.is_deleted and not (include_deleted and policy.reads_history):
                return AuthorizationResult.deny(action, "resource deleted", resource)

            if subject.user_id in context.owner_ids:
                return AuthorizationResult.allow(action, "owner", resource)

            if policy.min_tier is not None and context.vault_id is not None:
                tier = self.share_store.get_tier(context.vault_id, subject.user_id)
                if tier is not None and tier >= policy.min_tier:
                    return AuthorizationResult.allow(action, "share", resource, share_tier=tier)

            if policy.override is not None and subject.has_permission(policy.override):
                return AuthorizationResult.allow(action, f"override {policy.override.value}", resource)

        except (OperationalError, PoolTimeoutError) as e:
            logger.error(f"Authorization store unavailable during {action.value}: {type(e).__name__}")
            raise TransientError("Authorization store unavailable, retry the request")

        logger.warning(
            f"Denied {action.value} on {resource.resource_type.value} "
            f"{sanitize_id_for_log(resource.resource_id)} for user {sanitize_id_for_log(subject.user_id)}"
        )
        return AuthorizationResult.deny(action, "access denied", resource)

    def is_allowed(
        self,
        subject: Subject,
        action: ActionType,
        resource: Optional[ResourceIdentifier] = None,
        include_deleted: bool = False,
    ) -> bool:
        return self.authorize(subject, action, resource, include_deleted).allowed

    def require(
        self,
        subject: Subject,
        action: ActionType,
        resource: Optional[ResourceIdentifier] = None,
        include_deleted: bool = False,
    ) -> AuthorizationResult:
        """Authorize or raise ForbiddenError; the message never reveals why"""
        result = self.authorize(subject, action, resource, include_deleted)
        if not result.allowed:
            raise ForbiddenError("Access denied")
        return result

    def _load_context(self, resource: ResourceIdentifier) -> Optional[ResourceContext]:
        """Resolve the owners and parent vault of a resource instance"""
        resource_type = ResourceType(resource.resource_type)

        if resource_type == ResourceType.VAULT:
            vault = self.share_store.get_vault(resource.resource_id, include_deleted=True)
            if vault is None:
                return None
            return ResourceContext(frozenset({vault.owner_id}), vault.id, bool(vault.is_deleted))

        if resource_type == ResourceType.CREDENTIAL:
            credential = self.db.get(Credential, resource.resource_id)
            if credential is None:
                return None
            vault = self.share_store.get_vault(credential.vault_id, include_deleted=True)
            if vault is None:
                return None
            return ResourceContext(frozenset({vault.owner_id}), vault.id, bool(vault.is_deleted))

        if resource_type == ResourceType.TAG:
            tag = self.db.get(Tag, resource.resource_id)
            if tag is None:
                return None
            return ResourceContext(frozenset({tag.user_id}))

        if resource_type == ResourceType.AUDIT_LOG:
            entry = self.db.get(AuditLog, resource.resource_id)
            if entry is None:
                return None
            owners = set()
            if entry.user_id is not None:
                owners.add(entry.user_id)
            if entry.vault_id is not None:
                # History stays reachable after the vault is soft-deleted
                vault = self.share_store.get_vault(entry.vault_id, include_deleted=True)
                if vault is not None:
                    owners.add(vault.owner_id)
            return ResourceContext(frozenset(owners), entry.vault_id)

        raise ValueError(f"Unsupported resource type: {resource.resource_type}")


def get_authorization_service(db: Session) -> AuthorizationService:
    """Factory function to get authorization service instance"""
    return AuthorizationService(db)
