"""
Team Policy Models

Per-team security policies and the violations recorded against them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import String, Boolean, Integer, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base, UTCDateTime, new_id, utcnow


class PolicyType(str, Enum):
    PASSWORD_COMPLEXITY = "password_complexity"
    PASSWORD_EXPIRY = "password_expiry"
    MFA_REQUIREMENT = "mfa_requirement"
    SESSION_TIMEOUT = "session_timeout"
    IP_RESTRICTION = "ip_restriction"
    DEVICE_TRUST = "device_trust"
    GEOLOCATION = "geolocation"
    EXPORT_RESTRICTION = "export_restriction"
    SHARING_RESTRICTION = "sharing_restriction"
    RETENTION = "retention"
    ENCRYPTION_REQUIREMENT = "encryption_requirement"
    AUDIT_REQUIREMENT = "audit_requirement"
    APPROVAL_WORKFLOW = "approval_workflow"
    BACKUP_FREQUENCY = "backup_frequency"
    ACCESS_REVIEW = "access_review"
    TRAINING_REQUIREMENT = "training_requirement"


class PolicyMode(str, Enum):
    AUDIT = "audit"      # record only
    WARN = "warn"        # record and warn the caller
    ENFORCE = "enforce"  # record and block when block_on_violation is set


class PolicyAction(str, Enum):
    LOG = "log"
    NOTIFY_USER = "notify_user"
    NOTIFY_ADMIN = "notify_admin"
    BLOCK_ACTION = "block_action"
    REQUIRE_APPROVAL = "require_approval"
    FORCE_LOGOUT = "force_logout"
    DISABLE_ACCOUNT = "disable_account"
    CUSTOM_WEBHOOK = "custom_webhook"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_BY_TYPE: Dict[PolicyType, Severity] = {
    PolicyType.MFA_REQUIREMENT: Severity.HIGH,
    PolicyType.ENCRYPTION_REQUIREMENT: Severity.HIGH,
    PolicyType.IP_RESTRICTION: Severity.CRITICAL,
    PolicyType.DEVICE_TRUST: Severity.CRITICAL,
    PolicyType.PASSWORD_COMPLEXITY: Severity.MEDIUM,
    PolicyType.SESSION_TIMEOUT: Severity.MEDIUM,
}


def severity_for(policy_type: str) -> Severity:
    """Fixed severity per policy type"""
    try:
        return SEVERITY_BY_TYPE.get(PolicyType(policy_type), Severity.LOW)
    except ValueError:
        return Severity.LOW


class TeamPolicy(Base):
    """Team-configurable security rule"""
    __tablename__ = 'team_policies'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    enforcement: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    violation_count: Mapped[int] = mapped_column(Integer, default=0)
    last_enforced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_policy_team_enabled', 'team_id', 'enabled'),
    )


class PolicyViolation(Base):
    """Recorded policy violation; immutable except for resolution fields"""
    __tablename__ = 'policy_violations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Policy snapshot
    policy_id: Mapped[str] = mapped_column(String(36), nullable=False)
    policy_name: Mapped[str] = mapped_column(String(200), nullable=False)
    policy_type: Mapped[str] = mapped_column(String(50), nullable=False)

    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('idx_violation_team_time', 'team_id', 'timestamp'),
        Index('idx_violation_policy', 'policy_id'),
    )
