"""
Test configuration and fixtures for TeamGuard tests.
"""

import os
import tempfile
from pathlib import Path

# Point the application at a throwaway database before any teamguard import
_TEST_DB_DIR = tempfile.mkdtemp(prefix="teamguard-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_TEST_DB_DIR) / 'teamguard.db'}"
os.environ["USE_REDIS"] = "false"

from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from faker import Faker
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard import models  # noqa: F401
from teamguard.cache import InMemoryTTLCache
from teamguard.collaborators import SessionInfo, UserIdentity
from teamguard.database import Base, async_session_maker, engine, new_id
from teamguard.models.api import AccountRecord, IdentityRecord
from teamguard.models.users import Account, User
from teamguard.policy.service import PolicyEnforcementService
from teamguard.provisioning.service import ProvisioningService
from teamguard.rbac.service import RBACService, SYSTEM_ACTOR
from teamguard.vault.service import TeamVaultService

fake = Faker()


# ========== DATABASE ==========

@pytest.fixture
async def async_engine():
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Pooled connections are bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ========== CLOCK AND CACHE ==========

class FakeClock:
    """Monotonic clock the tests advance by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> InMemoryTTLCache:
    return InMemoryTTLCache(clock=clock)


# ========== COLLABORATOR FAKES ==========

class FakeIdentityProvider:
    def __init__(self):
        self.users: Dict[str, UserIdentity] = {}

    def add(self, user_id: str, mfa_enrolled: bool = False, created_at: Optional[datetime] = None) -> UserIdentity:
        identity = UserIdentity(
            id=user_id,
            email=fake.unique.email(),
            mfa_enrolled=mfa_enrolled,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.users[user_id] = identity
        return identity

    async def get_user(self, user_id: str) -> Optional[UserIdentity]:
        return self.users.get(user_id)


class FakeSessionProvider:
    def __init__(self):
        self.sessions: Dict[str, List[SessionInfo]] = {}
        self.invalidate_user_sessions = AsyncMock(return_value=0)

    def open(self, user_id: str, count: int = 1) -> None:
        now = datetime.now(timezone.utc)
        for _ in range(count):
            self.sessions.setdefault(user_id, []).append(
                SessionInfo(id=new_id(), user_id=user_id, created_at=now, last_activity=now)
            )

    async def get_active_sessions(self, user_id: str) -> List[SessionInfo]:
        return list(self.sessions.get(user_id, []))


class FakeCredentialStore:
    def __init__(self):
        self.accounts: Dict[str, AccountRecord] = {}

    def add(self, owner_id: str) -> AccountRecord:
        account = AccountRecord(
            id=new_id(),
            owner_id=owner_id,
            issuer=fake.company(),
            label=fake.user_name(),
        )
        self.accounts[account.id] = account
        return account

    async def get_account(self, account_id: str) -> Optional[AccountRecord]:
        return self.accounts.get(account_id)


class FakeIdentitySource:
    """Identity provider feed; assign ``records`` or ``error`` between runs"""

    def __init__(self, records: Optional[List[IdentityRecord]] = None):
        self.records = records or []
        self.error: Optional[Exception] = None

    async def fetch_users(self, team_id: str) -> List[IdentityRecord]:
        if self.error:
            raise self.error
        return list(self.records)


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def sessions() -> FakeSessionProvider:
    return FakeSessionProvider()


@pytest.fixture
def devices():
    """Device trust oracle; nothing is trusted unless a test says so"""
    oracle = AsyncMock()
    oracle.is_trusted.return_value = False
    return oracle


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def hooks():
    return AsyncMock()


@pytest.fixture
def credentials() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def identity_source() -> FakeIdentitySource:
    return FakeIdentitySource()


# ========== SERVICES ==========

@pytest.fixture
def rbac(cache) -> RBACService:
    return RBACService(cache=cache)


@pytest.fixture
def policy(rbac, identity, sessions, devices, notifier, hooks, clock) -> PolicyEnforcementService:
    return PolicyEnforcementService(
        rbac=rbac,
        identity=identity,
        sessions=sessions,
        devices=devices,
        notifier=notifier,
        hooks=hooks,
        cache=InMemoryTTLCache(clock=clock),
        fail_open=True,
    )


@pytest.fixture
def vaults(rbac, policy, credentials, notifier) -> TeamVaultService:
    return TeamVaultService(rbac=rbac, policy=policy, credentials=credentials, notifier=notifier)


@pytest.fixture
def provisioning(rbac, vaults) -> ProvisioningService:
    return ProvisioningService(rbac=rbac, vaults=vaults)


# ========== DATA HELPERS ==========

@pytest.fixture
def team_id() -> str:
    return new_id()


@pytest.fixture
async def seeded_roles(async_session, rbac) -> Dict[str, str]:
    """System roles by name -> id"""
    await rbac.initialize_roles(async_session)
    return {role.name: role.id for role in await rbac.get_roles(async_session)}


@pytest.fixture
def make_user(async_session, identity):
    """Create a user row (and its identity record) and return its id"""
    async def _make_user(team_id: Optional[str] = None, mfa_enrolled: bool = False, **fields) -> str:
        user = User(
            email=fields.pop("email", None) or fake.unique.email(),
            display_name=fake.name(),
            team_id=team_id,
            mfa_enrolled=mfa_enrolled,
            **fields
        )
        async_session.add(user)
        await async_session.commit()
        identity.users[user.id] = UserIdentity(
            id=user.id,
            email=user.email,
            mfa_enrolled=mfa_enrolled,
            created_at=datetime.now(timezone.utc),
        )
        return user.id

    return _make_user


@pytest.fixture
def grant(async_session, rbac, seeded_roles):
    """Assign a system role by name"""
    async def _grant(user_id: str, role_name: str, team_id: Optional[str] = None,
                     expires_at: Optional[datetime] = None) -> str:
        return await rbac.assign_role(
            user_id, seeded_roles[role_name], SYSTEM_ACTOR, team_id, expires_at, db=async_session
        )

    return _grant


@pytest.fixture
def make_account(async_session):
    """Persist an account row for the database-backed credential store"""
    async def _make_account(owner_id: str) -> str:
        account = Account(owner_id=owner_id, issuer=fake.company(), label=fake.user_name())
        async_session.add(account)
        await async_session.commit()
        return account.id

    return _make_account
