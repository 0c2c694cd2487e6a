"""
Session and identity models
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MFAStatus(str, Enum):
    """Per-user two-factor state"""

    DISABLED = "disabled"
    PENDING = "pending"
    ENABLED = "enabled"


class UserView(BaseModel):
    """Public profile of a user"""

    id: int
    email: str
    user_name: Optional[str] = None
    phone_number: Optional[str] = None
    email_confirmed: bool = False
    two_factor_enabled: bool = False
    roles: List[str] = Field(default_factory=list)
    created_at: datetime
    last_login_at: Optional[datetime] = None


class TokenPair(BaseModel):
    """Access and refresh token issued together"""

    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


class TokenClaims(BaseModel):
    """Identity carried by a validated access token"""

    user_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    token_id: str
    issued_at: datetime
    expires_at: datetime


class LoginResult(BaseModel):
    """Outcome of a successful login"""

    user_id: int
    email: str
    user_name: Optional[str] = None
    two_factor_enabled: bool = False
    tokens: TokenPair


@dataclass
class MFAEnrollmentResult:
    """Result of MFA enrollment process"""

    success: bool
    secret_key: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code_data: Optional[str] = None
    backup_codes: Optional[List[str]] = None
    error_message: Optional[str] = None
