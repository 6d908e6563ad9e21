"""
TeamGuard Data Models

Database models and Pydantic schemas for team access control.
"""

from .users import User, UserSession, TrustedDevice, Account
from .rbac import (
    Role, UserRole, AuditLog,
    Resource, Action, ConditionType, ConditionOperator, PermissionEffect
)
from .policy import (
    TeamPolicy, PolicyViolation,
    PolicyType, PolicyMode, PolicyAction, Severity, severity_for
)
from .vault import (
    TeamVault, VaultAccount, VaultApproval, VaultAccessLog,
    VaultAction, ApprovalStatus
)
from .provisioning import (
    ProvisioningConfig, ProvisioningApiKey, ProvisioningLog, SyncStatus,
    ProvisioningType, ProvisioningOperation, ProvisioningResource, SyncState
)

__all__ = [
    # Identity
    "User",
    "UserSession",
    "TrustedDevice",
    "Account",
    # RBAC
    "Role",
    "UserRole",
    "AuditLog",
    "Resource",
    "Action",
    "ConditionType",
    "ConditionOperator",
    "PermissionEffect",
    # Policies
    "TeamPolicy",
    "PolicyViolation",
    "PolicyType",
    "PolicyMode",
    "PolicyAction",
    "Severity",
    "severity_for",
    # Vaults
    "TeamVault",
    "VaultAccount",
    "VaultApproval",
    "VaultAccessLog",
    "VaultAction",
    "ApprovalStatus",
    # Provisioning
    "ProvisioningConfig",
    "ProvisioningApiKey",
    "ProvisioningLog",
    "SyncStatus",
    "ProvisioningType",
    "ProvisioningOperation",
    "ProvisioningResource",
    "SyncState",
]
