"""
Vault sharing models
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..rbac import SharePermission


class ShareInfo(BaseModel):
    """A resolved vault share as returned to callers"""

    vault_id: int
    user_id: int
    email: str
    user_name: Optional[str] = None
    permission: SharePermission
    shared_at: datetime
    shared_by_user_id: Optional[int] = None


class InvitationInfo(BaseModel):
    """A freshly created invitation; ``token`` is only ever returned here"""

    invitation_id: int
    vault_id: int
    email: str
    permission: SharePermission
    expires_at: datetime
    token: str
