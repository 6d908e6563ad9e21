"""
Role-Based Access Control (RBAC) Models

Database models for team permission management. Roles bundle permissions on
hierarchical resources; user role assignments grant roles globally or scoped
to a team.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any
from sqlalchemy import String, Boolean, Integer, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base, UTCDateTime, new_id, utcnow


class Resource(str, Enum):
    """Hierarchical resources; a grant on a parent covers its dotted children"""
    ACCOUNTS = "accounts"
    ACCOUNTS_CREATE = "accounts.create"
    ACCOUNTS_READ = "accounts.read"
    ACCOUNTS_UPDATE = "accounts.update"
    ACCOUNTS_DELETE = "accounts.delete"
    ACCOUNTS_EXPORT = "accounts.export"
    ACCOUNTS_IMPORT = "accounts.import"

    TEAM = "team"
    TEAM_MEMBERS = "team.members"
    TEAM_INVITE = "team.invite"
    TEAM_REMOVE = "team.remove"
    TEAM_ROLES = "team.roles"
    TEAM_SETTINGS = "team.settings"

    VAULTS = "vaults"
    VAULTS_CREATE = "vaults.create"
    VAULTS_READ = "vaults.read"
    VAULTS_UPDATE = "vaults.update"
    VAULTS_DELETE = "vaults.delete"
    VAULTS_SHARE = "vaults.share"

    SECURITY = "security"
    SECURITY_AUDIT = "security.audit"
    SECURITY_POLICIES = "security.policies"
    SECURITY_DEVICES = "security.devices"

    COMPLIANCE = "compliance"
    COMPLIANCE_REPORTS = "compliance.reports"
    COMPLIANCE_GDPR = "compliance.gdpr"
    COMPLIANCE_SOC2 = "compliance.soc2"

    ADMIN = "admin"
    ADMIN_USERS = "admin.users"
    ADMIN_BILLING = "admin.billing"
    ADMIN_SETTINGS = "admin.settings"


class Action(str, Enum):
    """Operations a permission can allow"""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SHARE = "share"
    EXPORT = "export"
    IMPORT = "import"
    EXECUTE = "execute"
    APPROVE = "approve"
    AUDIT = "audit"


class ConditionType(str, Enum):
    """Attribute conditions narrowing a permission"""
    OWN = "own"          # resource owner must be the requesting user
    TEAM = "team"        # request must carry a team scope
    CUSTOM = "custom"    # field/operator/value predicate on caller context


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    IN = "in"


class PermissionEffect(str, Enum):
    """Deny permissions are evaluated across all roles before any grant"""
    ALLOW = "allow"
    DENY = "deny"


class Role(Base):
    """Named bundle of permissions"""
    __tablename__ = 'rbac_roles'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # [{"resource": ..., "actions": [...], "conditions": [...], "effect": "allow"}]
    permissions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_role_priority', 'priority'),
    )


class UserRole(Base):
    """Role assignment, optionally scoped to a team"""
    __tablename__ = 'rbac_user_roles'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    role_id: Mapped[str] = mapped_column(String(36), nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    granted_by: Mapped[str] = mapped_column(String(36), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Soft revoke
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index('idx_user_role_user_active', 'user_id', 'is_active'),
        Index('idx_user_role_role', 'role_id', 'is_active'),
    )


class AuditLog(Base):
    """Administrative audit trail"""
    __tablename__ = 'audit_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    affected_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    additional_data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index('idx_audit_action_time', 'action', 'timestamp'),
        Index('idx_audit_user', 'user_id'),
    )
