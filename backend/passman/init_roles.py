"""
Initialize roles, categories and demo accounts in the database
"""

import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .auth import PasswordManager
from .config import get_settings
from .database import Category, Role, SessionLocal, User, UserRoleAssignment, create_tables, get_engine, utcnow
from .rbac import ROLE_DESCRIPTIONS, ROLE_PERMISSIONS, UserRole, validate_role_catalog

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = {
    "Login": "Website and application sign-ins",
    "Email": "Mail accounts",
    "Banking": "Bank and card accounts",
    "Server": "SSH, database and other infrastructure access",
    "Other": "Anything else",
}

DEMO_USERS = {
    UserRole.ADMIN: "admin@passman.local",
    UserRole.SECURITY_AUDITOR: "auditor@passman.local",
    UserRole.VAULT_OWNER: "owner@passman.local",
    UserRole.VAULT_READER: "reader@passman.local",
}


def init_roles(db: Session) -> Dict[str, int]:
    """Validate the role catalog and mirror it into the roles table.

    Raises ValueError before touching the database when a role grants a
    permission outside the catalog.
    """
    summary = validate_role_catalog()

    try:
        for role in UserRole:
            permissions = sorted(p.value for p in ROLE_PERMISSIONS[role])
            existing = db.query(Role).filter(Role.name == role.value).first()
            if existing:
                logger.info(f"Role {role.value} already exists, updating permissions...")
                existing.permissions = permissions
                existing.description = ROLE_DESCRIPTIONS[role]
                existing.updated_at = utcnow()
            else:
                logger.info(f"Creating role {role.value}...")
                db.add(Role(name=role.value, description=ROLE_DESCRIPTIONS[role], permissions=permissions))

        db.commit()
        logger.info("Roles initialized successfully")
        return summary

    except Exception as e:
        logger.error(f"Error initializing roles: {type(e).__name__}")
        db.rollback()
        raise


def seed_categories(db: Session) -> int:
    """Create the default credential categories that are missing"""
    created = 0
    for name, description in DEFAULT_CATEGORIES.items():
        if db.query(Category).filter(Category.name == name).first() is None:
            db.add(Category(name=name, description=description))
            created += 1
    db.commit()
    return created


def seed_demo_users(db: Session, password: str, password_manager: Optional[PasswordManager] = None) -> int:
    """
    Create one confirmed account per canonical role for local development.

    Existing accounts are left alone. Never run this against production.
    """
    password_manager = password_manager or PasswordManager()
    created = 0
    for role, email in DEMO_USERS.items():
        if db.query(User).filter(User.email == email).first() is not None:
            continue
        now = utcnow()
        user = User(
            email=email,
            user_name=email.split("@")[0],
            password_hash=password_manager.hash_password(password),
            email_confirmed=True,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        db.flush()
        db.add(UserRoleAssignment(user_id=user.id, role=role.value, assigned_at=now))
        created += 1
        logger.info(f"Created demo user {email} with role {role.value}")

    db.commit()
    return created


def initialize_core(seed_demo_password: Optional[str] = None) -> None:
    """Create tables and seed reference data at startup"""
    settings = get_settings()
    engine = get_engine()
    create_tables(engine)

    db = SessionLocal()
    try:
        init_roles(db)
        seed_categories(db)
        if seed_demo_password:
            if not settings.debug:
                raise RuntimeError("Demo users can only be seeded in debug mode")
            seed_demo_users(db, seed_demo_password)
        logger.info("PassMan core initialized successfully")
    finally:
        db.close()
