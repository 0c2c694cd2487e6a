"""
PassMan persistence layer
SQLAlchemy models and session management for the authorization core

Relationships are plain id columns; services fetch related rows explicitly
so every ownership check is a visible query.
"""

import calendar
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Generator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)

SessionLocal = sessionmaker(autocommit=False, autoflush=False)
Base = declarative_base()

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the storage convention of every model."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_seconds(value) -> int:
    """Unix seconds for an int, a float or a naive UTC datetime"""
    if isinstance(value, datetime):
        return calendar.timegm(value.utctimetuple())
    return int(value)


# Database Models
class User(Base):  # type: ignore[valid-type, misc]
    """User identity with Argon2id password hash and second-factor state"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(256), unique=True, index=True, nullable=False)  # stored case-folded
    user_name = Column(String(100), unique=True, index=True, nullable=True)
    phone_number = Column(String(32), nullable=True)
    password_hash = Column(String(255), nullable=False)
    email_confirmed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime, nullable=True)

    # Two-factor state machine: disabled -> pending -> enabled
    mfa_status = Column(String(20), default="disabled", nullable=False)
    mfa_secret = Column(Text, nullable=True)  # base32 TOTP secret
    backup_codes = Column(JSON, nullable=True)  # SHA-256 hashes of unused codes
    backup_codes_version = Column(Integer, default=0, nullable=False)  # bumped on every write to backup_codes
    mfa_enrolled_at = Column(DateTime, nullable=True)
    last_mfa_use = Column(DateTime, nullable=True)

    @property
    def two_factor_enabled(self) -> bool:
        return self.mfa_status == "enabled"


class Role(Base):  # type: ignore[valid-type, misc]
    """Role definitions mirrored from the permission catalog"""

    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False)  # JSON array of permission strings
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserRoleAssignment(Base):  # type: ignore[valid-type, misc]
    """Roles held by a user; a user may hold several"""

    __tablename__ = "user_roles"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    role = Column(String(50), primary_key=True)
    assigned_by = Column(Integer, nullable=True)
    assigned_at = Column(DateTime, default=utcnow, nullable=False)


class Vault(Base):  # type: ignore[valid-type, misc]
    """Password vault with immutable owner and soft-delete flag"""

    __tablename__ = "vaults"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    icon = Column(String(50), nullable=True)
    owner_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Category(Base):  # type: ignore[valid-type, misc]
    """Global credential categories"""

    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(String(255), nullable=True)


class Credential(Base):  # type: ignore[valid-type, misc]
    """Credential record stored inside a vault"""

    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True, index=True)
    vault_id = Column(Integer, ForeignKey("vaults.id"), index=True, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    title = Column(String(255), nullable=False)
    username = Column(String(255), nullable=True)
    encrypted_password = Column(Text, nullable=False)  # ciphertext from the encryption collaborator
    url = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Tag(Base):  # type: ignore[valid-type, misc]
    """User-scoped label for credentials"""

    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    color = Column(String(7), nullable=True)  # #RRGGBB
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)


class CredentialTag(Base):  # type: ignore[valid-type, misc]
    """Credential to tag association"""

    __tablename__ = "credential_tags"

    credential_id = Column(Integer, ForeignKey("credentials.id"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id"), primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class VaultShare(Base):  # type: ignore[valid-type, misc]
    """Grant of a share tier on a vault to a non-owner"""

    __tablename__ = "vault_shares"

    vault_id = Column(Integer, ForeignKey("vaults.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    permission = Column(Integer, nullable=False)  # SharePermission value
    shared_at = Column(DateTime, default=utcnow, nullable=False)
    shared_by_user_id = Column(Integer, nullable=True)


class ShareInvitation(Base):  # type: ignore[valid-type, misc]
    """Email-bound, single-use invitation to a vault"""

    __tablename__ = "share_invitations"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, index=True, nullable=False)  # SHA-256
    vault_id = Column(Integer, ForeignKey("vaults.id"), index=True, nullable=False)
    email = Column(String(256), nullable=False)  # stored case-folded
    permission = Column(Integer, nullable=False)
    created_by_user_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    consumed_by_user_id = Column(Integer, nullable=True)


class RefreshToken(Base):  # type: ignore[valid-type, misc]
    """Server-tracked refresh token; only its hash is stored"""

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, index=True, nullable=False)  # SHA-256
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    replaced_by_id = Column(Integer, nullable=True)


class AuditLog(Base):  # type: ignore[valid-type, misc]
    """Append-only security audit trail.

    User, vault and credential references are plain ids so entries outlive
    the rows they describe.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=True)
    action = Column(Integer, index=True, nullable=False)  # AuditAction code
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, nullable=True)
    vault_id = Column(Integer, index=True, nullable=True)
    credential_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)


def create_db_engine(database_url: str, timeout_seconds: int = 10) -> Engine:
    """Create an engine with a bounded wait on locks and connections."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=timeout_seconds,
    )


@lru_cache()
def get_engine() -> Engine:
    """Engine for the configured database, bound to ``SessionLocal`` on first use"""
    settings = get_settings()
    engine = create_db_engine(settings.database_url, settings.database_timeout_seconds)
    SessionLocal.configure(bind=engine)
    return engine


# Database dependency for FastAPI
def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI endpoints.

    Yields:
        SQLAlchemy Session instance.

    Note:
        Session is automatically closed when the request completes.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(engine: Optional[Engine] = None) -> None:
    """Create all tables"""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def check_database_health(db: Session) -> bool:
    """Check database connectivity"""
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
