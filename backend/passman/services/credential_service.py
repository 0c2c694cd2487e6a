"""
Credential operations
Credentials live inside vaults and inherit their access rules: the vault
owner, or a sharer at View tier for reads and Edit tier for changes
"""

import logging
import re
from typing import Callable, List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic import validator
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import Category, Clock, Credential, CredentialTag, Tag, Vault, utcnow
from ..exceptions import NotFoundError, ValidationError
from ..models.audit_models import AuditAction
from ..models.authorization_models import ResourceIdentifier, Subject
from ..models.vault_models import CredentialView
from ..rbac import ActionType
from ..utils.logging_security import sanitize_id_for_log
from .audit_service import AuditService
from .authorization import AuthorizationService
from .base import service_operation
from .share_store import VaultShareStore

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)

# Encrypts a plaintext secret for storage; supplied by the host
Encryptor = Callable[[str], str]


class CredentialRequest(BaseModel):
    """Validated credential fields; None leaves a field untouched on update"""

    title: Optional[str] = None
    username: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None

    @validator("title")
    def title_must_be_valid(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        if len(v) > 255:
            raise ValueError("Title cannot exceed 255 characters")
        return v

    @validator("username")
    def username_length(cls, v):
        if v is not None and len(v) > 255:
            raise ValueError("Username cannot exceed 255 characters")
        return v

    @validator("url")
    def url_must_be_http(cls, v):
        if not v:
            return v
        v = v.strip()
        if len(v) > 500:
            raise ValueError("URL cannot exceed 500 characters")
        if not URL_PATTERN.match(v):
            raise ValueError("URL must start with http:// or https://")
        return v


class CredentialService:
    """Credential CRUD and tagging"""

    def __init__(
        self,
        db: Session,
        encrypt: Encryptor,
        settings: Optional[Settings] = None,
        authorizer: Optional[AuthorizationService] = None,
        audit: Optional[AuditService] = None,
        share_store: Optional[VaultShareStore] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.encrypt = encrypt
        self.settings = settings or get_settings()
        self.share_store = share_store or VaultShareStore(db)
        self.authorizer = authorizer or AuthorizationService(db, self.share_store)
        self.audit = audit or AuditService(db, self.settings, self.authorizer, clock)
        self.clock = clock

    @service_operation
    def create_credential(
        self,
        vault_id: int,
        actor: Subject,
        title: str,
        password: str,
        username: Optional[str] = None,
        url: Optional[str] = None,
        notes: Optional[str] = None,
        category_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CredentialView:
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_CREATE, ResourceIdentifier.vault(vault.id))

        request = self._validate(title=title if title is not None else "", username=username, url=url, notes=notes)
        if not password:
            raise ValidationError("Password is required", field="password")
        self._check_category(category_id)

        now = self.clock()
        credential = Credential(
            vault_id=vault.id,
            category_id=category_id,
            title=request.title,
            username=request.username,
            encrypted_password=self.encrypt(password),
            url=request.url or None,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        self.db.add(credential)
        self.db.commit()

        self.audit.log(
            actor.user_id,
            AuditAction.CREDENTIAL_CREATED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            credential_id=credential.id,
            entity_type="Credential",
            entity_id=credential.id,
        )
        return self._to_view(credential)

    @service_operation
    def get_credential(
        self,
        credential_id: int,
        actor: Subject,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CredentialView:
        """Read one credential; every successful read is audited"""
        credential = self._require_credential(credential_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_READ, ResourceIdentifier.credential(credential.id))

        self.audit.log(
            actor.user_id,
            AuditAction.CREDENTIAL_VIEWED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=credential.vault_id,
            credential_id=credential.id,
            entity_type="Credential",
            entity_id=credential.id,
        )
        return self._to_view(credential)

    @service_operation
    def list_credentials(self, vault_id: int, actor: Subject) -> List[CredentialView]:
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_READ, ResourceIdentifier.vault(vault.id))

        credentials = (
            self.db.query(Credential)
            .filter(Credential.vault_id == vault.id)
            .order_by(Credential.title, Credential.id)
            .all()
        )
        tag_map = self._tag_ids_for([c.id for c in credentials])
        return [self._to_view(c, tag_map.get(c.id, [])) for c in credentials]

    @service_operation
    def update_credential(
        self,
        credential_id: int,
        actor: Subject,
        title: Optional[str] = None,
        password: Optional[str] = None,
        username: Optional[str] = None,
        url: Optional[str] = None,
        notes: Optional[str] = None,
        category_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CredentialView:
        credential = self._require_credential(credential_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_UPDATE, ResourceIdentifier.credential(credential.id))

        request = self._validate(title=title, username=username, url=url, notes=notes)
        self._check_category(category_id)

        if request.title is not None:
            credential.title = request.title
        if request.username is not None:
            credential.username = request.username or None
        if request.url is not None:
            credential.url = request.url or None
        if request.notes is not None:
            credential.notes = request.notes or None
        if category_id is not None:
            credential.category_id = category_id
        if password:
            credential.encrypted_password = self.encrypt(password)
        credential.updated_at = self.clock()
        self.db.commit()

        self.audit.log(
            actor.user_id,
            AuditAction.CREDENTIAL_UPDATED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=credential.vault_id,
            credential_id=credential.id,
            entity_type="Credential",
            entity_id=credential.id,
            details="Password changed" if password else None,
        )
        return self._to_view(credential)

    @service_operation
    def delete_credential(
        self,
        credential_id: int,
        actor: Subject,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        credential = self._require_credential(credential_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_DELETE, ResourceIdentifier.credential(credential.id))

        vault_id = credential.vault_id
        self.db.query(CredentialTag).filter(CredentialTag.credential_id == credential.id).delete(
            synchronize_session=False
        )
        self.db.delete(credential)
        self.db.commit()

        logger.info(
            f"User {sanitize_id_for_log(actor.user_id)} deleted credential {sanitize_id_for_log(credential_id)}"
        )
        self.audit.log(
            actor.user_id,
            AuditAction.CREDENTIAL_DELETED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault_id,
            credential_id=credential_id,
            entity_type="Credential",
            entity_id=credential_id,
        )
        return True

    @service_operation
    def add_tag(self, credential_id: int, tag_id: int, actor: Subject) -> CredentialView:
        """Attach one of the actor's own tags; attaching twice is a no-op"""
        credential = self._require_credential(credential_id)
        tag = self._require_tag(tag_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_UPDATE, ResourceIdentifier.credential(credential.id))
        self.authorizer.require(actor, ActionType.TAG_READ, ResourceIdentifier.tag(tag.id))

        if self.db.get(CredentialTag, (credential.id, tag.id)) is None:
            self.db.add(CredentialTag(credential_id=credential.id, tag_id=tag.id, created_at=self.clock()))
            self.db.commit()
        return self._to_view(credential)

    @service_operation
    def remove_tag(self, credential_id: int, tag_id: int, actor: Subject) -> CredentialView:
        credential = self._require_credential(credential_id)
        tag = self._require_tag(tag_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_UPDATE, ResourceIdentifier.credential(credential.id))
        self.authorizer.require(actor, ActionType.TAG_READ, ResourceIdentifier.tag(tag.id))

        link = self.db.get(CredentialTag, (credential.id, tag.id))
        if link is None:
            raise NotFoundError("Tag is not attached to this credential")
        self.db.delete(link)
        self.db.commit()
        return self._to_view(credential)

    @service_operation
    def set_tags(self, credential_id: int, tag_ids: List[int], actor: Subject) -> CredentialView:
        """
        Replace every tag on a credential with ``tag_ids``.

        All tags are checked before anything changes, so one unknown or foreign
        tag leaves the existing links untouched. An empty list clears the tags.
        """
        credential = self._require_credential(credential_id)
        self.authorizer.require(actor, ActionType.CREDENTIAL_UPDATE, ResourceIdentifier.credential(credential.id))

        wanted = sorted(set(tag_ids or []))
        for tag_id in wanted:
            tag = self._require_tag(tag_id)
            self.authorizer.require(actor, ActionType.TAG_READ, ResourceIdentifier.tag(tag.id))

        now = self.clock()
        current = self.db.query(CredentialTag).filter(CredentialTag.credential_id == credential.id).all()
        for link in current:
            if link.tag_id not in wanted:
                self.db.delete(link)
        existing = {link.tag_id for link in current}
        for tag_id in wanted:
            if tag_id not in existing:
                self.db.add(CredentialTag(credential_id=credential.id, tag_id=tag_id, created_at=now))
        self.db.commit()

        logger.info(f"Set {len(wanted)} tags on credential {sanitize_id_for_log(credential.id)}")
        return self._to_view(credential)

    def _require_vault(self, vault_id: int) -> Vault:
        vault = self.share_store.get_vault(vault_id)
        if vault is None:
            raise NotFoundError("Vault not found")
        return vault

    def _require_credential(self, credential_id: int) -> Credential:
        """Credentials of a soft-deleted vault are not found"""
        credential = self.db.get(Credential, credential_id)
        if credential is None or self.share_store.get_vault(credential.vault_id) is None:
            raise NotFoundError("Credential not found")
        return credential

    def _require_tag(self, tag_id: int) -> Tag:
        tag = self.db.get(Tag, tag_id)
        if tag is None:
            raise NotFoundError("Tag not found")
        return tag

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and self.db.get(Category, category_id) is None:
            raise ValidationError("Unknown category", field="category_id")

    def _validate(self, **fields) -> CredentialRequest:
        try:
            return CredentialRequest(**fields)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e)

    def _tag_ids_for(self, credential_ids: List[int]) -> dict:
        if not credential_ids:
            return {}
        tag_map = {}
        rows = (
            self.db.query(CredentialTag.credential_id, CredentialTag.tag_id)
            .filter(CredentialTag.credential_id.in_(credential_ids))
            .order_by(CredentialTag.tag_id)
            .all()
        )
        for credential_id, tag_id in rows:
            tag_map.setdefault(credential_id, []).append(tag_id)
        return tag_map

    def _to_view(self, credential: Credential, tag_ids: Optional[List[int]] = None) -> CredentialView:
        if tag_ids is None:
            tag_ids = self._tag_ids_for([credential.id]).get(credential.id, [])
        return CredentialView(
            id=credential.id,
            vault_id=credential.vault_id,
            title=credential.title,
            username=credential.username,
            encrypted_password=credential.encrypted_password,
            url=credential.url,
            notes=credential.notes,
            category_id=credential.category_id,
            tag_ids=tag_ids,
            created_at=credential.created_at,
            updated_at=credential.updated_at,
        )


def get_credential_service(db: Session, encrypt: Encryptor) -> CredentialService:
    """Factory function to get credential service instance"""
    return CredentialService(db, encrypt)
