"""
Vault share persistence

Explicit id-based lookups over the ``vault_shares`` relation. The
authorization resolver reads tiers from here and the sharing manager writes
through it; neither holds any in-process state.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..database import Vault, VaultShare
from ..rbac import SharePermission

logger = logging.getLogger(__name__)


class VaultShareStore:
    """CRUD access to vaults and their share rows"""

    def __init__(self, db: Session):
        self.db = db

    def get_vault(self, vault_id: int, include_deleted: bool = False) -> Optional[Vault]:
        """Fetch a vault; soft-deleted vaults are hidden unless explicitly requested"""
        vault = self.db.get(Vault, vault_id)
        if vault is None or (vault.is_deleted and not include_deleted):
            return None
        return vault

    def get_share(self, vault_id: int, user_id: int) -> Optional[VaultShare]:
        return self.db.get(VaultShare, (vault_id, user_id))

    def get_tier(self, vault_id: int, user_id: int) -> Optional[SharePermission]:
        share = self.get_share(vault_id, user_id)
        if share is None:
            return None
        return SharePermission(share.permission)

    def list_for_vault(self, vault_id: int) -> List[VaultShare]:
        return (
            self.db.query(VaultShare)
            .filter(VaultShare.vault_id == vault_id)
            .order_by(VaultShare.shared_at, VaultShare.user_id)
            .all()
        )

    def list_vault_ids_for_user(self, user_id: int) -> List[int]:
        """Ids of live vaults shared with a user, ascending"""
        rows = (
            self.db.query(VaultShare.vault_id)
            .join(Vault, Vault.id == VaultShare.vault_id)
            .filter(VaultShare.user_id == user_id, Vault.is_deleted.is_(False))
            .order_by(VaultShare.vault_id)
            .all()
        )
        return [row[0] for row in rows]

    def upsert(
        self,
        vault_id: int,
        user_id: int,
        tier: SharePermission,
        shared_by_user_id: int,
        now: datetime,
    ) -> VaultShare:
        """Create the share or update its tier in place; the caller commits.

        At most one row exists per (vault, user), so a second grant changes
        the tier and records the new granter.
        """
        share = self.get_share(vault_id, user_id)
        if share is None:
            share = VaultShare(
                vault_id=vault_id,
                user_id=user_id,
                permission=int(tier),
                shared_at=now,
                shared_by_user_id=shared_by_user_id,
            )
            self.db.add(share)
        else:
            share.permission = int(tier)
            share.shared_by_user_id = shared_by_user_id
        self.db.flush()
        return share

    def delete(self, vault_id: int, user_id: int) -> bool:
        """Remove a share; False when there was nothing to remove"""
        share = self.get_share(vault_id, user_id)
        if share is None:
            return False
        self.db.delete(share)
        self.db.flush()
        return True
