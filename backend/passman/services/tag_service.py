"""
Tag operations
Tags are private to the user who created them; names are unique per user
"""

import logging
import re
from typing import List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic import validator
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import Clock, CredentialTag, Tag, utcnow
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models.audit_models import AuditAction
from ..models.authorization_models import ResourceIdentifier, Subject
from ..models.vault_models import TagView
from ..rbac import ActionType
from .audit_service import AuditService
from .authorization import AuthorizationService
from .base import service_operation

logger = logging.getLogger(__name__)

COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


class TagRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None

    @validator("name")
    def name_must_be_valid(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Tag name is required")
        if len(v) > 100:
            raise ValueError("Tag name cannot exceed 100 characters")
        return v

    @validator("color")
    def color_must_be_hex(cls, v):
        if v and not COLOR_PATTERN.match(v):
            raise ValueError("Color must look like #RRGGBB")
        return v


class TagService:
    """User-scoped tag management"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        authorizer: Optional[AuthorizationService] = None,
        audit: Optional[AuditService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.authorizer = authorizer or AuthorizationService(db)
        self.audit = audit or AuditService(db, self.settings, self.authorizer, clock)
        self.clock = clock

    @service_operation
    def create_tag(self, actor: Subject, name: str, color: Optional[str] = None) -> TagView:
        self.authorizer.require(actor, ActionType.TAG_CREATE)
        request = self._validate(name=name if name is not None else "", color=color)
        self._check_unique(actor.user_id, request.name)

        tag = Tag(user_id=actor.user_id, name=request.name, color=request.color or None, created_at=self.clock())
        try:
            self.db.add(tag)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("A tag with this name already exists", field="name")

        self.audit.log(actor.user_id, AuditAction.TAG_CREATED, entity_type="Tag", entity_id=tag.id)
        return self._to_view(tag, 0)

    @service_operation
    def get_tag(self, tag_id: int, actor: Subject) -> TagView:
        tag = self._require_tag(tag_id)
        self.authorizer.require(actor, ActionType.TAG_READ, ResourceIdentifier.tag(tag.id))
        return self._to_view(tag, self._credential_counts([tag.id]).get(tag.id, 0))

    @service_operation
    def list_tags(self, actor: Subject) -> List[TagView]:
        self.authorizer.require(actor, ActionType.TAG_READ)
        tags = self.db.query(Tag).filter(Tag.user_id == actor.user_id).order_by(Tag.name).all()
        counts = self._credential_counts([t.id for t in tags])
        return [self._to_view(t, counts.get(t.id, 0)) for t in tags]

    @service_operation
    def rename_tag(self, tag_id: int, actor: Subject, name: Optional[str] = None, color: Optional[str] = None) -> TagView:
        tag = self._require_tag(tag_id)
        self.authorizer.require(actor, ActionType.TAG_UPDATE, ResourceIdentifier.tag(tag.id))
        request = self._validate(name=name, color=color)

        if request.name is not None and request.name != tag.name:
            self._check_unique(tag.user_id, request.name)
            tag.name = request.name
        if request.color is not None:
            tag.color = request.color or None
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("A tag with this name already exists", field="name")

        self.audit.log(actor.user_id, AuditAction.TAG_UPDATED, entity_type="Tag", entity_id=tag.id)
        return self._to_view(tag, self._credential_counts([tag.id]).get(tag.id, 0))

    @service_operation
    def delete_tag(self, tag_id: int, actor: Subject) -> bool:
        """Delete a tag and detach it from every credential"""
        tag = self._require_tag(tag_id)
        self.authorizer.require(actor, ActionType.TAG_DELETE, ResourceIdentifier.tag(tag.id))

        self.db.query(CredentialTag).filter(CredentialTag.tag_id == tag.id).delete(synchronize_session=False)
        self.db.delete(tag)
        self.db.commit()

        self.audit.log(actor.user_id, AuditAction.TAG_DELETED, entity_type="Tag", entity_id=tag_id)
        return True

    def _require_tag(self, tag_id: int) -> Tag:
        tag = self.db.get(Tag, tag_id)
        if tag is None:
            raise NotFoundError("Tag not found")
        return tag

    def _check_unique(self, user_id: int, name: str) -> None:
        existing = self.db.query(Tag.id).filter(Tag.user_id == user_id, Tag.name == name).first()
        if existing is not None:
            raise ConflictError("A tag with this name already exists", field="name")

    def _validate(self, **fields) -> TagRequest:
        try:
            return TagRequest(**fields)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e)

    def _credential_counts(self, tag_ids: List[int]) -> dict:
        if not tag_ids:
            return {}
        rows = (
            self.db.query(CredentialTag.tag_id, func.count(CredentialTag.credential_id))
            .filter(CredentialTag.tag_id.in_(tag_ids))
            .group_by(CredentialTag.tag_id)
            .all()
        )
        return dict(rows)

    def _to_view(self, tag: Tag, credential_count: int) -> TagView:
        return TagView(
            id=tag.id,
            name=tag.name,
            color=tag.color,
            credential_count=credential_count,
            created_at=tag.created_at,
        )


def get_tag_service(db: Session) -> TagService:
    """Factory function to get tag service instance"""
    return TagService(db)
