"""
Team Vault Models

Shared credential containers, their account join records, the approval queue
and the append-only access log.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any
from sqlalchemy import String, Integer, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base, UTCDateTime, new_id, utcnow


class VaultAction(str, Enum):
    VAULT_CREATED = "vault.created"
    VAULT_UPDATED = "vault.updated"
    VAULT_DELETED = "vault.deleted"
    ACCOUNT_ADDED = "account.added"
    ACCOUNT_REMOVED = "account.removed"
    ACCOUNT_ACCESSED = "account.accessed"
    ACCOUNT_MODIFIED = "account.modified"
    MEMBER_ADDED = "member.added"
    MEMBER_REMOVED = "member.removed"
    SETTINGS_UPDATED = "settings.updated"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_GRANTED = "approval.granted"
    APPROVAL_DENIED = "approval.denied"
    APPROVAL_EXPIRED = "approval.expired"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class TeamVault(Base):
    """Shared container of 2FA credentials"""
    __tablename__ = 'team_vaults'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    member_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    account_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_vault_team', 'team_id'),
    )


class VaultAccount(Base):
    """Account membership in a vault with optional per-account overrides"""
    __tablename__ = 'vault_accounts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    vault_id: Mapped[str] = mapped_column(String(36), nullable=False)
    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    added_by: Mapped[str] = mapped_column(String(36), nullable=False)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_accessed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0)

    # {"can_view": [...], "can_edit": [...], "can_delete": [...]}; null means vault-level membership applies
    permissions: Mapped[Optional[Dict[str, List[str]]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index('idx_vault_account', 'vault_id', 'account_id'),
    )


class VaultApproval(Base):
    """Deferred vault operation awaiting sign-off"""
    __tablename__ = 'vault_approvals'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    vault_id: Mapped[str] = mapped_column(String(36), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(36), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(20), default=ApprovalStatus.PENDING.value)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Approved access requests are single use
    consumed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index('idx_approval_vault_status', 'vault_id', 'status'),
    )


class VaultAccessLog(Base):
    """Append-only audit trail of vault activity"""
    __tablename__ = 'vault_access_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    vault_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index('idx_access_log_vault_time', 'vault_id', 'timestamp'),
    )
