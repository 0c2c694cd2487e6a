"""
PassMan Core Configuration
Token, password-hash, two-factor and lockout settings loaded from the environment
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings

from .rbac import UserRole


class Settings(BaseSettings):
    """Authorization core settings"""

    # Application
    app_name: str = "PassMan"
    debug: bool = False

    # Session tokens
    secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "passman-api"
    jwt_audience: str = "passman-clients"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # Password hashing (Argon2id work factor)
    password_hash_time_cost: int = 3
    password_hash_memory_cost: int = 65536  # 64MB
    password_hash_parallelism: int = 1

    # Account lockout
    max_failed_login_attempts: int = 5
    lockout_minutes: int = 15
    require_email_confirmation: bool = False

    # Two-factor authentication
    totp_tolerance_steps: int = Field(default=1, ge=0, le=10)
    totp_issuer: str = "PassMan"
    backup_code_count: int = Field(default=10, ge=1, le=20)

    # Registration
    default_role: str = UserRole.VAULT_OWNER.value

    # Vault invitations
    invitation_expire_hours: int = 72

    # Audit trail pagination
    audit_max_page_size: int = 100
    audit_default_page_size: int = 20

    # Database
    database_url: str = "sqlite:///./passman.db"
    database_timeout_seconds: int = 10

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @validator("secret_key")
    def secret_key_must_be_strong(cls, v):
        if len(v) < 32:
            raise ValueError("Secret key must be at least 32 characters long")
        return v

    @validator("default_role")
    def default_role_must_exist(cls, v):
        if v not in {role.value for role in UserRole}:
            raise ValueError(f"Unknown default role: {v}")
        return v

    @validator(
        "access_token_expire_minutes",
        "refresh_token_expire_days",
        "lockout_minutes",
        "max_failed_login_attempts",
        "invitation_expire_hours",
        "audit_max_page_size",
    )
    def lifetimes_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @validator("audit_default_page_size")
    def default_page_size_within_cap(cls, v, values):
        cap = values.get("audit_max_page_size", 100)
        if v < 1 or v > cap:
            raise ValueError(f"Default page size must be between 1 and {cap}")
        return v

    class Config:
        env_file = ".env"
        env_prefix = "PASSMAN_"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    """Get cached core settings"""
    return Settings()
