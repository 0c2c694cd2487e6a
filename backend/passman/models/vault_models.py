"""
Vault, credential and tag views
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..rbac import SharePermission


class VaultView(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    owner_id: int
    is_owner: bool
    share_permission: Optional[SharePermission] = None  # None for the owner
    created_at: datetime
    updated_at: datetime


class CredentialView(BaseModel):
    id: int
    vault_id: int
    title: str
    username: Optional[str] = None
    encrypted_password: str
    url: Optional[str] = None
    notes: Optional[str] = None
    category_id: Optional[int] = None
    tag_ids: List[int] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TagView(BaseModel):
    id: int
    name: str
    color: Optional[str] = None
    credential_count: int = 0
    created_at: datetime
