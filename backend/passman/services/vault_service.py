"""
Vault operations
Create, read, list, update and soft-delete vaults behind the resolver
"""

import logging
from typing import List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic import validator
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import Clock, Vault, VaultShare, utcnow
from ..exceptions import NotFoundError, ValidationError
from ..models.audit_models import AuditAction
from ..models.authorization_models import ResourceIdentifier, Subject
from ..models.vault_models import VaultView
from ..rbac import ActionType, SharePermission
from ..utils.logging_security import sanitize_id_for_log
from .audit_service import AuditService
from .authorization import AuthorizationService
from .base import service_operation
from .share_store import VaultShareStore

logger = logging.getLogger(__name__)


def check_vault_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Vault name is required")
    if len(name) > 100:
        raise ValueError("Vault name cannot exceed 100 characters")
    return name


class VaultRequest(BaseModel):
    """Validated vault fields; None leaves a field untouched on update"""

    name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None

    @validator("name")
    def name_must_be_valid(cls, v):
        return check_vault_name(v) if v is not None else v

    @validator("description")
    def description_length(cls, v):
        if v is not None and len(v) > 500:
            raise ValueError("Description cannot exceed 500 characters")
        return v

    @validator("icon")
    def icon_length(cls, v):
        if v is not None and len(v) > 50:
            raise ValueError("Icon cannot exceed 50 characters")
        return v


class VaultService:
    """Vault CRUD; every call is checked by the authorization resolver"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        authorizer: Optional[AuthorizationService] = None,
        audit: Optional[AuditService] = None,
        share_store: Optional[VaultShareStore] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.share_store = share_store or VaultShareStore(db)
        self.authorizer = authorizer or AuthorizationService(db, self.share_store)
        self.audit = audit or AuditService(db, self.settings, self.authorizer, clock)
        self.clock = clock

    @service_operation
    def create_vault(
        self,
        actor: Subject,
        name: str,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VaultView:
        self.authorizer.require(actor, ActionType.VAULT_CREATE)
        request = self._validate(name=name if name is not None else "", description=description, icon=icon)

        now = self.clock()
        vault = Vault(
            name=request.name,
            description=request.description,
            icon=request.icon,
            owner_id=actor.user_id,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(vault)
        self.db.commit()

        logger.info(f"User {sanitize_id_for_log(actor.user_id)} created vault {sanitize_id_for_log(vault.id)}")
        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_CREATED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="Vault",
            entity_id=vault.id,
        )
        return self._to_view(vault, actor.user_id)

    @service_operation
    def get_vault(self, vault_id: int, actor: Subject) -> VaultView:
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_READ, ResourceIdentifier.vault(vault.id))
        return self._to_view(vault, actor.user_id)

    @service_operation
    def list_vaults(self, actor: Subject) -> List[VaultView]:
        """Live vaults the actor owns or has been shared, newest first"""
        self.authorizer.require(actor, ActionType.VAULT_READ)

        owned = (
            self.db.query(Vault)
            .filter(Vault.owner_id == actor.user_id, Vault.is_deleted.is_(False))
            .all()
        )
        shared = (
            self.db.query(Vault, VaultShare.permission)
            .join(VaultShare, VaultShare.vault_id == Vault.id)
            .filter(VaultShare.user_id == actor.user_id, Vault.is_deleted.is_(False))
            .all()
        )

        views = [self._to_view(vault, actor.user_id, tier=None) for vault in owned]
        views.extend(
            self._to_view(vault, actor.user_id, tier=SharePermission(permission))
            for vault, permission in shared
            if vault.owner_id != actor.user_id
        )
        views.sort(key=lambda v: (v.created_at, v.id), reverse=True)
        return views

    @service_operation
    def update_vault(
        self,
        vault_id: int,
        actor: Subject,
        name: Optional[str] = None,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VaultView:
        """Owner-only update; soft-deleted vaults are not found"""
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_UPDATE, ResourceIdentifier.vault(vault.id))
        request = self._validate(name=name, description=description, icon=icon)

        if request.name is not None:
            vault.name = request.name
        if request.description is not None:
            vault.description = request.description or None
        if request.icon is not None:
            vault.icon = request.icon or None
        vault.updated_at = self.clock()
        self.db.commit()

        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_UPDATED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="Vault",
            entity_id=vault.id,
        )
        return self._to_view(vault, actor.user_id)

    @service_operation
    def delete_vault(
        self,
        vault_id: int,
        actor: Subject,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Soft-delete a vault.

        The row, its credentials and its shares stay in storage so audit
        history keeps resolving, but every normal read treats it as absent.
        """
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_DELETE, ResourceIdentifier.vault(vault.id))

        now = self.clock()
        vault.is_deleted = True
        vault.deleted_at = now
        vault.updated_at = now
        self.db.commit()

        logger.info(f"User {sanitize_id_for_log(actor.user_id)} deleted vault {sanitize_id_for_log(vault.id)}")
        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_DELETED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="Vault",
            entity_id=vault.id,
        )
        return True

    def _require_vault(self, vault_id: int) -> Vault:
        vault = self.share_store.get_vault(vault_id)
        if vault is None:
            raise NotFoundError("Vault not found")
        return vault

    def _validate(self, **fields) -> VaultRequest:
        try:
            return VaultRequest(**fields)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e)

    def _to_view(self, vault: Vault, user_id: int, tier: Optional[SharePermission] = None) -> VaultView:
        is_owner = vault.owner_id == user_id
        if not is_owner and tier is None:
            tier = self.share_store.get_tier(vault.id, user_id)
        return VaultView(
            id=vault.id,
            name=vault.name,
            description=vault.description,
            icon=vault.icon,
            owner_id=vault.owner_id,
            is_owner=is_owner,
            share_permission=None if is_owner else tier,
            created_at=vault.created_at,
            updated_at=vault.updated_at,
        )


def get_vault_service(db: Session) -> VaultService:
    """Factory function to get vault service instance"""
    return VaultService(db)
