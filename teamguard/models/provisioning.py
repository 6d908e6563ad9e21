"""
Provisioning Models

Identity-provider sync configuration, hashed API keys, the provisioning log
and per-team sync status.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any
from sqlalchemy import String, Boolean, Integer, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base, UTCDateTime, new_id, utcnow


class ProvisioningType(str, Enum):
    SCIM = "scim"
    SAML = "saml"
    CUSTOM = "custom"


class ProvisioningOperation(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"


class ProvisioningResource(str, Enum):
    USER = "user"
    GROUP = "group"


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


def empty_sync_stats() -> Dict[str, int]:
    return {
        "users_created": 0,
        "users_updated": 0,
        "users_deleted": 0,
        "groups_created": 0,
        "groups_updated": 0,
        "groups_deleted": 0,
        "errors": 0,
    }


class ProvisioningConfig(Base):
    """Provisioning settings for a team"""
    __tablename__ = 'provisioning_configs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    type: Mapped[str] = mapped_column(String(20), default=ProvisioningType.SCIM.value)

    # auto_provision, auto_deprovision, sync_groups, sync_attributes,
    # default_role_id, default_vault_ids
    sync_config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ProvisioningApiKey(Base):
    """Team API key; only the SHA-256 hash of the raw key is stored"""
    __tablename__ = 'provisioning_api_keys'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    permissions: Mapped[List[str]] = mapped_column(JSON, default=list)
    ip_restrictions: Mapped[List[str]] = mapped_column(JSON, default=list)

    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index('idx_api_key_team', 'team_id', 'active'),
    )


class ProvisioningLog(Base):
    """Outcome of a single provisioning operation"""
    __tablename__ = 'provisioning_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    error: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    __table_args__ = (
        Index('idx_provisioning_log_team_time', 'team_id', 'timestamp'),
    )


class SyncStatus(Base):
    """Single mutable sync status document per team"""
    __tablename__ = 'provisioning_sync_status'

    team_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=SyncState.IDLE.value)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_sync_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    stats: Mapped[Dict[str, int]] = mapped_column(JSON, default=empty_sync_stats)
    errors: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    runs: Mapped[int] = mapped_column(Integer, default=0)
