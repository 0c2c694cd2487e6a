"""
Pytest configuration and fixtures for PassMan core tests.

Every test gets a fresh in-memory SQLite database, settings with a cheap
Argon2 work factor and a controllable clock shared by all services.
"""

from datetime import timedelta
from typing import Iterable, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from passman.auth import PasswordManager
from passman.config import Settings
from passman.database import Base, UserRoleAssignment, utcnow
from passman.models.authorization_models import Subject
from passman.services.audit_service import AuditService
from passman.services.auth import LoginService, TokenService
from passman.services.authorization import AuthorizationService
from passman.services.credential_service import CredentialService
from passman.services.identity_service import IdentityService
from passman.services.mfa_service import MFAService
from passman.services.sharing_service import SharingService
from passman.services.tag_service import TagService
from passman.services.vault_service import VaultService

TEST_SECRET_KEY = "test-secret-key-for-passman-core-tests-0123456789"  # pragma: allowlist secret
DEFAULT_PASSWORD = "Str0ng!Passw0rd"  # pragma: allowlist secret


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": TEST_SECRET_KEY,
        "password_hash_time_cost": 1,
        "password_hash_memory_cost": 1024,
        "database_url": "sqlite://",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def fake_encrypt(plaintext: str) -> str:
    """Stand-in for the host's at-rest encryption"""
    return "enc:" + plaintext[::-1]


class FakeClock:
    """Deterministic clock; starts at the current second and only moves when told"""

    def __init__(self, start=None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Core:
    """All services wired to one session, one settings object and one clock"""

    def __init__(self, db: Session, settings: Settings, clock: FakeClock):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.authorizer = AuthorizationService(db)
        self.audit = AuditService(db, settings, self.authorizer, clock)
        self.password_manager = PasswordManager(settings)
        self.identity = IdentityService(db, settings, self.password_manager, self.audit, self.authorizer, clock)
        self.tokens = TokenService(db, settings, identity=self.identity, clock=clock)
        self.mfa = MFAService(db, settings, clock)
        self.login = LoginService(db, settings, self.identity, self.tokens, self.mfa, self.audit, clock)
        self.sharing = SharingService(db, settings, self.authorizer, self.audit, clock=clock)
        self.vaults = VaultService(db, settings, self.authorizer, self.audit, clock=clock)
        self.credentials = CredentialService(db, fake_encrypt, settings, self.authorizer, self.audit, clock=clock)
        self.tags = TagService(db, settings, self.authorizer, self.audit, clock)

    def register(self, email: str, password: str = DEFAULT_PASSWORD, roles: Optional[Iterable[str]] = None) -> Subject:
        user = self.identity.register(email, password).unwrap()
        if roles is not None:
            self.set_roles(user.id, roles)
        return self.identity.build_subject(user.id).unwrap()

    def set_roles(self, user_id: int, roles: Iterable[str]) -> None:
        """Replace role assignments directly, bypassing the role.manage check"""
        self.db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user_id).delete()
        for role in roles:
            self.db.add(UserRoleAssignment(user_id=user_id, role=role, assigned_at=self.clock()))
        self.db.commit()

    def subject(self, user_id: int) -> Subject:
        return self.identity.build_subject(user_id).unwrap()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build settings with overrides, e.g. a different work factor"""
    return make_settings


@pytest.fixture
def password() -> str:
    return DEFAULT_PASSWORD


@pytest.fixture
def engine():
    """In-memory SQLite shared by every connection of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine) -> Session:
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def core(db_session, settings, clock) -> Core:
    return Core(db_session, settings, clock)


@pytest.fixture
def core_factory(settings, clock):
    """Wire a Core onto another session, e.g. one per thread"""

    def factory(db: Session) -> Core:
        return Core(db, settings, clock)

    return factory


@pytest.fixture
def alice(core) -> Subject:
    return core.register("alice@test.local")


@pytest.fixture
def bob(core) -> Subject:
    return core.register("bob@test.local")


@pytest.fixture
def carol(core) -> Subject:
    return core.register("carol@test.local")


@pytest.fixture
def admin(core) -> Subject:
    return core.register("admin@test.local", roles=["Admin"])


@pytest.fixture
def auditor(core) -> Subject:
    return core.register("auditor@test.local", roles=["SecurityAuditor"])


@pytest.fixture
def alice_vault(core, alice):
    return core.vaults.create_vault(alice, "Personal").unwrap()
