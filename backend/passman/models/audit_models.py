"""
Audit trail models
"""

import math
from datetime import datetime
from enum import IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class AuditAction(IntEnum):
    """Event kinds recorded in the audit trail, grouped by hundreds"""

    # User events
    USER_REGISTERED = 100
    USER_LOGGED_IN = 101
    USER_LOGGED_OUT = 102
    USER_PASSWORD_CHANGED = 103
    USER_ROLE_CHANGED = 104

    # Vault events
    VAULT_CREATED = 200
    VAULT_UPDATED = 201
    VAULT_DELETED = 202
    VAULT_SHARED = 203
    VAULT_SHARE_REVOKED = 204
    VAULT_SHARE_UPDATED = 205

    # Credential events
    CREDENTIAL_CREATED = 300
    CREDENTIAL_UPDATED = 301
    CREDENTIAL_DELETED = 302
    CREDENTIAL_VIEWED = 303

    # Tag events
    TAG_CREATED = 350
    TAG_UPDATED = 351
    TAG_DELETED = 352

    # Security events
    FAILED_LOGIN_ATTEMPT = 400
    SUSPICIOUS_ACTIVITY = 401

    @property
    def label(self) -> str:
        """PascalCase event name as shown to API clients"""
        return "".join(part.capitalize() for part in self.name.split("_"))


class AuditLogFilter(BaseModel):
    """Optional predicates applied to every audit query"""

    action: Optional[AuditAction] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    vault_id: Optional[int] = None
    credential_id: Optional[int] = None
    entity_type: Optional[str] = None


class AuditLogEntryView(BaseModel):
    """Audit entry with referenced names resolved for display"""

    id: int
    action: AuditAction
    action_name: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    details: Optional[str] = None
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    vault_id: Optional[int] = None
    vault_name: Optional[str] = None
    credential_id: Optional[int] = None
    credential_title: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime


class PaginatedAuditResult(BaseModel):
    """One page of audit entries, newest first"""

    items: List[AuditLogEntryView] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0
