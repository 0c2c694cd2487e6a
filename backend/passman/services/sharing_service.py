"""
Sharing Manager for PassMan
Owns the vault-share relation consulted by the authorization resolver and
the email-bound invitations that create shares
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from ..auth import generate_opaque_token, hash_token
from ..config import Settings, get_settings
from ..database import Clock, ShareInvitation, User, Vault, VaultShare, utcnow
from ..exceptions import ConflictError, ForbiddenError, NotFoundError, TransientError, ValidationError
from ..models.audit_models import AuditAction
from ..models.authorization_models import ResourceIdentifier, Subject
from ..models.sharing_models import InvitationInfo, ShareInfo
from ..rbac import ActionType, SharePermission
from ..utils.logging_security import sanitize_id_for_log
from .audit_service import AuditService
from .authorization import AuthorizationService
from .base import service_operation
from .identity_service import check_email, normalize_email
from .share_store import VaultShareStore

logger = logging.getLogger(__name__)

INVITATION_TOKEN_BYTES = 32


def parse_tier(value) -> SharePermission:
    try:
        return SharePermission.parse(value)
    except (ValueError, TypeError):
        raise ValidationError("Permission must be View, Edit or Admin", field="permission")


class SharingService:
    """
    Grant, change and revoke vault shares.

    Every mutation is gated by the resolver's ``vault.share`` action, which
    admits the owner and sharers holding the Admin tier.
    """

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
    def share(
        self,
        vault_id: int,
        actor: Subject,
        target_email: str,
        permission,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ShareInfo:
        """Share a vault with the user registered under ``target_email``"""
        tier = parse_tier(permission)
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_SHARE, ResourceIdentifier.vault(vault.id))

        target = self._find_user_by_email(target_email)
        if target is None:
            raise NotFoundError("User not found", field="email")
        if target.id == vault.owner_id:
            raise ValidationError("Cannot share a vault with its owner", field="email")
        if target.id == actor.user_id:
            raise ValidationError("Cannot share a vault with yourself", field="email")

        share = self._upsert(vault.id, target.id, tier, actor.user_id)

        logger.info(
            f"User {sanitize_id_for_log(actor.user_id)} shared vault {sanitize_id_for_log(vault.id)} "
            f"with user {sanitize_id_for_log(target.id)} as {tier.name}"
        )
        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_SHARED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="VaultShare",
            entity_id=target.id,
            details=f"Shared with user {target.id} as {tier.name}",
        )
        return self._to_info(share, target)

    @service_operation
    def revoke(
        self,
        vault_id: int,
        actor: Subject,
        target_user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Remove a share; a missing share is reported, never silently ignored"""
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_SHARE, ResourceIdentifier.vault(vault.id))

        if target_user_id == vault.owner_id:
            raise ValidationError("Cannot revoke the owner's access to a vault", field="user_id")
        if not self.share_store.delete(vault.id, target_user_id):
            raise NotFoundError("Share not found")
        self.db.commit()

        logger.info(
            f"User {sanitize_id_for_log(actor.user_id)} revoked user {sanitize_id_for_log(target_user_id)} "
            f"from vault {sanitize_id_for_log(vault.id)}"
        )
        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_SHARE_REVOKED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="VaultShare",
            entity_id=target_user_id,
            details=f"Revoked access of user {target_user_id}",
        )
        return True

    @service_operation
    def change_tier(
        self,
        vault_id: int,
        actor: Subject,
        target_user_id: int,
        permission,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ShareInfo:
        tier = parse_tier(permission)
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_SHARE, ResourceIdentifier.vault(vault.id))

        if target_user_id == vault.owner_id:
            raise ValidationError("Cannot change the owner's access to a vault", field="user_id")
        share = self.share_store.get_share(vault.id, target_user_id)
        if share is None:
            raise NotFoundError("Share not found")

        previous = SharePermission(share.permission)
        share.permission = int(tier)
        share.shared_by_user_id = actor.user_id
        self.db.commit()

        self.audit.log(
            actor.user_id,
            AuditAction.VAULT_SHARE_UPDATED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="VaultShare",
            entity_id=target_user_id,
            details=f"Permission {previous.name} -> {tier.name}",
        )
        return self._to_info(share, self.db.get(User, target_user_id))

    @service_operation
    def list_shares(self, vault_id: int, actor: Subject) -> List[ShareInfo]:
        """Shares of a vault, visible to its owner and Admin-tier sharers"""
        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_SHARE, ResourceIdentifier.vault(vault.id))

        shares = self.share_store.list_for_vault(vault.id)
        user_ids = [s.user_id for s in shares]
        users = {u.id: u for u in self.db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
        return [self._to_info(share, users.get(share.user_id)) for share in shares]

    def has_access(self, vault_id: int, user_id: int, min_tier=None) -> bool:
        """
        True when the user owns the vault or holds a share at or above ``min_tier``.

        With no ``min_tier`` any share counts. Soft-deleted vaults grant nothing.
        """
        required = parse_tier(min_tier) if min_tier is not None else None
        try:
            vault = self.share_store.get_vault(vault_id)
            if vault is None:
                return False
            if vault.owner_id == user_id:
                return True
            tier = self.share_store.get_tier(vault_id, user_id)
        except (OperationalError, PoolTimeoutError) as e:
            logger.error(f"Share lookup failed on the data store: {type(e).__name__}")
            raise TransientError("Data store unavailable, retry the request")

        if tier is None:
            return False
        return required is None or tier >= required

    def list_shared_vault_ids(self, user_id: int) -> List[int]:
        """Ids of live vaults shared with a user"""
        return self.share_store.list_vault_ids_for_user(user_id)

    # Invitations

    @service_operation
    def create_invitation(
        self,
        vault_id: int,
        actor: Subject,
        email: str,
        permission,
        expires_at: Optional[datetime] = None,
    ) -> InvitationInfo:
        """
        Invite an email address to a vault.

        The raw token is returned once and only its hash is stored. Accepting
        it later performs the same upsert as ``share``.
        """
        tier = parse_tier(permission)
        try:
            invited_email = check_email(email)
        except ValueError as e:
            raise ValidationError(str(e), field="email")

        vault = self._require_vault(vault_id)
        self.authorizer.require(actor, ActionType.VAULT_SHARE, ResourceIdentifier.vault(vault.id))

        owner = self.db.get(User, vault.owner_id)
        if owner is not None and owner.email == invited_email:
            raise ValidationError("Cannot invite the owner of a vault", field="email")

        now = self.clock()
        expires_at = expires_at or now + timedelta(hours=self.settings.invitation_expire_hours)
        if expires_at <= now:
            raise ValidationError("Invitation expiry must be in the future", field="expires_at")

        token = generate_opaque_token(INVITATION_TOKEN_BYTES)
        invitation = ShareInvitation(
            token_hash=hash_token(token),
            vault_id=vault.id,
            email=invited_email,
            permission=int(tier),
            created_by_user_id=actor.user_id,
            created_at=now,
            expires_at=expires_at,
        )
        self.db.add(invitation)
        self.db.commit()

        logger.info(
            f"User {sanitize_id_for_log(actor.user_id)} created invitation {sanitize_id_for_log(invitation.id)} "
            f"for vault {sanitize_id_for_log(vault.id)}"
        )
        return InvitationInfo(
            invitation_id=invitation.id,
            vault_id=vault.id,
            email=invited_email,
            permission=tier,
            expires_at=expires_at,
            token=token,
        )

    @service_operation
    def accept_invitation(
        self,
        token: str,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ShareInfo:
        """Redeem an invitation for the user whose email it was issued to"""
        if not token:
            raise ValidationError("Invitation token is required", field="token")

        invitation = self.db.query(ShareInvitation).filter(ShareInvitation.token_hash == hash_token(token)).first()
        if invitation is None:
            raise NotFoundError("Invitation not found")

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if normalize_email(user.email) != invitation.email:
            raise ForbiddenError("Invitation was issued to a different email address")

        vault = self._require_vault(invitation.vault_id)
        if vault.owner_id == user.id:
            raise ValidationError("Cannot share a vault with its owner")

        now = self.clock()
        consumed = self.db.execute(
            update(ShareInvitation)
            .where(
                ShareInvitation.id == invitation.id,
                ShareInvitation.consumed_at.is_(None),
                ShareInvitation.expires_at > now,
            )
            .values(consumed_at=now, consumed_by_user_id=user.id)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            self.db.rollback()
            current = self.db.get(ShareInvitation, invitation.id)
            if current is not None and current.consumed_at is not None:
                raise ConflictError("Invitation has already been used", field="token")
            raise ValidationError("Invitation has expired", field="token")

        tier = SharePermission(invitation.permission)
        try:
            share = self.share_store.upsert(vault.id, user.id, tier, invitation.created_by_user_id, now)
            self.db.commit()
        except IntegrityError:
            # Rolling back also un-consumes the invitation, so the caller can retry
            self.db.rollback()
            raise TransientError("Share was modified concurrently, retry the invitation")

        logger.info(
            f"User {sanitize_id_for_log(user.id)} accepted invitation {sanitize_id_for_log(invitation.id)}"
        )
        self.audit.log(
            user.id,
            AuditAction.VAULT_SHARED,
            ip_address=ip_address,
            user_agent=user_agent,
            vault_id=vault.id,
            entity_type="VaultShare",
            entity_id=user.id,
            details=f"Accepted invitation {invitation.id} as {tier.name}",
        )
        return self._to_info(share, user)

    @service_operation
    def purge_expired_invitations(self) -> int:
        """Maintenance: delete invitations past their expiry"""
        deleted = (
            self.db.query(ShareInvitation)
            .filter(ShareInvitation.expires_at <= self.clock())
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info(f"Purged {deleted} expired invitation(s)")
        return deleted

    def _require_vault(self, vault_id: int) -> Vault:
        vault = self.share_store.get_vault(vault_id)
        if vault is None:
            raise NotFoundError("Vault not found")
        return vault

    def _find_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("A valid email address is required", field="email")
        return self.db.query(User).filter(User.email == normalized).first()

    def _upsert(self, vault_id: int, user_id: int, tier: SharePermission, shared_by_user_id: int) -> VaultShare:
        """Upsert and commit, retrying once when a concurrent grant inserted the row first"""
        now = self.clock()
        try:
            share = self.share_store.upsert(vault_id, user_id, tier, shared_by_user_id, now)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            share = self.share_store.upsert(vault_id, user_id, tier, shared_by_user_id, now)
            self.db.commit()
        return share

    def _to_info(self, share: VaultShare, user: Optional[User]) -> ShareInfo:
        return ShareInfo(
            vault_id=share.vault_id,
            user_id=share.user_id,
            email=user.email if user else "",
            user_name=user.user_name if user else None,
            permission=SharePermission(share.permission),
            shared_at=share.shared_at,
            shared_by_user_id=share.shared_by_user_id,
        )


def get_sharing_service(db: Session) -> SharingService:
    """Factory function to get sharing service instance"""
    return SharingService(db)
