"""
External collaborators

Interfaces the access control core consumes (identity, sessions, device trust,
notifications, credential records, enforcement hooks, user directory) together
with database-backed defaults. Defaults open their own short-lived sessions so
evaluators can run concurrently with the caller's transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
import structlog

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import async_session_maker, utcnow
from .models.api import AccountRecord, IdentityRecord
from .models.users import Account, TrustedDevice, User, UserSession

logger = structlog.get_logger(__name__)


@dataclass
class UserIdentity:
    id: str
    email: str
    mfa_enrolled: bool
    created_at: datetime
    is_active: bool = True
    display_name: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class SessionInfo:
    id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    device_id: Optional[str] = None
    ip_address: Optional[str] = None


class IdentityProvider(Protocol):
    async def get_user(self, user_id: str) -> Optional[UserIdentity]: ...


class SessionProvider(Protocol):
    async def get_active_sessions(self, user_id: str) -> List[SessionInfo]: ...

    async def invalidate_user_sessions(self, user_id: str) -> int: ...


class DeviceTrustOracle(Protocol):
    async def is_trusted(self, device_id: str, user_id: str) -> bool: ...


class NotificationDispatcher(Protocol):
    async def notify_user(self, user_id: str, title: str, message: str) -> None: ...

    async def notify_admins(self, team_id: str, title: str, message: str) -> None: ...


class CredentialStore(Protocol):
    async def get_account(self, account_id: str) -> Optional[AccountRecord]: ...


class EnforcementHooks(Protocol):
    async def disable_account(self, user_id: str, policy: Dict[str, Any]) -> None: ...

    async def dispatch_webhook(self, policy: Dict[str, Any], violation: Dict[str, Any]) -> None: ...


class UserDirectory(Protocol):
    async def create_user(self, record: IdentityRecord, team_id: str, db: AsyncSession) -> str: ...

    async def update_user(self, user_id: str, changes: Dict[str, Any], db: AsyncSession) -> None: ...

    async def get_user(self, user_id: str, db: AsyncSession) -> Optional[User]: ...

    async def find_by_external_id(self, team_id: str, external_id: str, db: AsyncSession) -> Optional[User]: ...

    async def list_team_users(self, team_id: str, db: AsyncSession) -> List[User]: ...


class IdentitySource(Protocol):
    async def fetch_users(self, team_id: str) -> List[IdentityRecord]: ...


def _identity(user: User) -> UserIdentity:
    return UserIdentity(
        id=user.id,
        email=user.email,
        mfa_enrolled=user.mfa_enrolled,
        created_at=user.created_at,
        is_active=user.is_active,
        display_name=user.display_name,
        external_id=user.external_id,
    )


class DatabaseIdentityProvider:
    def __init__(self, session_maker: async_sessionmaker = None):
        self.session_maker = session_maker or async_session_maker

    async def get_user(self, user_id: str) -> Optional[UserIdentity]:
        async with self.session_maker() as session:
            user = await session.get(User, user_id)
            return _identity(user) if user else None


class DatabaseSessionProvider:
    def __init__(self, session_maker: async_sessionmaker = None):
        self.session_maker = session_maker or async_session_maker

    async def get_active_sessions(self, user_id: str) -> List[SessionInfo]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(UserSession).where(
                    and_(UserSession.user_id == user_id, UserSession.is_active == True)
                ).order_by(UserSession.created_at)
            )
            return [
                SessionInfo(
                    id=s.id,
                    user_id=s.user_id,
                    created_at=s.created_at,
                    last_activity=s.last_activity,
                    device_id=s.device_id,
                    ip_address=s.ip_address,
                )
                for s in result.scalars().all()
            ]

    async def invalidate_user_sessions(self, user_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                update(UserSession)
                .where(and_(UserSession.user_id == user_id, UserSession.is_active == True))
                .values(is_active=False, terminated_at=utcnow(), termination_reason="policy")
            )
            await session.commit()
            logger.info("User sessions invalidated", user_id=user_id, count=result.rowcount)
            return result.rowcount


class DatabaseDeviceTrustOracle:
    def __init__(self, session_maker: async_sessionmaker = None):
        self.session_maker = session_maker or async_session_maker

    async def is_trusted(self, device_id: str, user_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TrustedDevice.id).where(
                    and_(
                        TrustedDevice.user_id == user_id,
                        TrustedDevice.device_id == device_id,
                        TrustedDevice.trusted == True,
                        or_(
                            TrustedDevice.expires_at.is_(None),
                            TrustedDevice.expires_at > utcnow()
                        )
                    )
                )
            )
            return result.first() is not None


class DatabaseCredentialStore:
    def __init__(self, session_maker: async_sessionmaker = None):
        self.session_maker = session_maker or async_session_maker

    async def get_account(self, account_id: str) -> Optional[AccountRecord]:
        async with self.session_maker() as session:
            account = await session.get(Account, account_id)
            return AccountRecord.model_validate(account) if account else None


class LoggingNotificationDispatcher:
    """Hands notifications to the log pipeline; delivery happens elsewhere"""

    async def notify_user(self, user_id: str, title: str, message: str) -> None:
        logger.info("User notification", user_id=user_id, title=title, message=message)

    async def notify_admins(self, team_id: str, title: str, message: str) -> None:
        logger.info("Admin notification", team_id=team_id, title=title, message=message)


class LoggingEnforcementHooks:
    async def disable_account(self, user_id: str, policy: Dict[str, Any]) -> None:
        logger.warning("Account disable requested by policy",
                       user_id=user_id, policy_id=policy.get("id"))

    async def dispatch_webhook(self, policy: Dict[str, Any], violation: Dict[str, Any]) -> None:
        logger.info("Policy webhook requested",
                    policy_id=policy.get("id"), violation_id=violation.get("id"))


class DatabaseUserDirectory:
    """User records in the caller's transaction"""

    async def create_user(self, record: IdentityRecord, team_id: str, db: AsyncSession) -> str:
        user = User(
            email=record.email,
            display_name=record.display_name,
            external_id=record.external_id,
            team_id=team_id,
            is_active=record.active,
        )
        db.add(user)
        await db.flush()
        return user.id

    async def update_user(self, user_id: str, changes: Dict[str, Any], db: AsyncSession) -> None:
        user = await db.get(User, user_id)
        if not user:
            return
        for field in ("email", "display_name", "is_active", "external_id"):
            if field in changes:
                setattr(user, field, changes[field])
        user.updated_at = utcnow()

    async def get_user(self, user_id: str, db: AsyncSession) -> Optional[User]:
        return await db.get(User, user_id)

    async def find_by_external_id(self, team_id: str, external_id: str, db: AsyncSession) -> Optional[User]:
        result = await db.execute(
            select(User).where(and_(User.team_id == team_id, User.external_id == external_id))
        )
        return result.scalar_one_or_none()

    async def list_team_users(self, team_id: str, db: AsyncSession) -> List[User]:
        result = await db.execute(select(User).where(User.team_id == team_id))
        return list(result.scalars().all())
