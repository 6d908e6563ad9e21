"""
TeamGuard API Models

Pydantic models shared by the services and the HTTP layer.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from .rbac import Resource, Action, ConditionType, ConditionOperator, PermissionEffect
from .policy import PolicyType, PolicyMode, PolicyAction, Severity
from .provisioning import ProvisioningType
from .vault import VaultAction


class APIError(BaseModel):
    """Standard API error response"""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str = "1.0.0"


# ========== RBAC ==========

class ConditionSpec(BaseModel):
    """Attribute condition attached to a permission"""
    type: ConditionType
    field: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: Any = None


class PermissionSpec(BaseModel):
    """Actions allowed (or denied) on a resource subtree"""
    resource: Resource
    actions: List[Action] = Field(..., min_length=1)
    conditions: List[ConditionSpec] = []
    effect: PermissionEffect = PermissionEffect.ALLOW


class PermissionContext(BaseModel):
    """Caller-supplied attributes a permission check is evaluated against"""
    team_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_owner_id: Optional[str] = None
    custom: Dict[str, Any] = {}

    def cache_key(self) -> str:
        return json.dumps(self.model_dump(mode="json", exclude_none=True), sort_keys=True)


class PermissionCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    matched_role: Optional[str] = None
    matched_permission: Optional[PermissionSpec] = None


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: List[PermissionSpec] = []
    priority: int = Field(default=50, ge=0, le=1000)


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[PermissionSpec]] = None
    priority: Optional[int] = Field(None, ge=0, le=1000)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    permissions: List[PermissionSpec]
    is_system: bool
    priority: int
    created_by: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RoleAssignmentRequest(BaseModel):
    user_id: str
    role_id: str
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class UserRoleResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    team_id: Optional[str]
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime]
    is_active: bool

    class Config:
        from_attributes = True


class PermissionCheckRequest(BaseModel):
    user_id: Optional[str] = None
    resource: Resource
    action: Action
    context: Optional[PermissionContext] = None


class EffectivePermissions(BaseModel):
    """Union of everything a user's active roles grant"""
    user_id: str
    team_id: Optional[str] = None
    roles: List[str]
    permissions: Dict[str, List[str]]
    is_admin: bool


# ========== POLICIES ==========

class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    REGEX = "regex"


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    NOTIFY = "notify"


class RuleCondition(BaseModel):
    field: str
    operator: RuleOperator
    value: Any


class PolicyRule(BaseModel):
    id: str
    condition: RuleCondition
    action: RuleAction
    message: Optional[str] = None


class PolicyConfig(BaseModel):
    """Type-specific policy settings; each policy type reads its own subset"""
    # Password complexity / expiry
    min_length: Optional[int] = None
    require_uppercase: bool = False
    require_lowercase: bool = False
    require_numbers: bool = False
    require_special_chars: bool = False
    prevent_reuse: Optional[int] = None
    expiry_days: Optional[int] = None
    warning_days: Optional[int] = None

    # MFA
    mfa_methods: List[str] = []
    grace_period_days: Optional[int] = None

    # Sessions
    timeout_minutes: Optional[int] = None
    max_concurrent_sessions: Optional[int] = None

    # Network
    allowed_ips: List[str] = []
    blocked_ips: List[str] = []
    allowed_countries: List[str] = []
    blocked_countries: List[str] = []

    # Devices
    require_trusted_device: bool = False
    device_expiry_days: Optional[int] = None
    max_devices_per_user: Optional[int] = None

    # Export / sharing
    allowed_formats: List[str] = []
    max_export_items: Optional[int] = None
    require_approval: bool = False
    watermark: bool = False
    allow_sharing: bool = True
    max_share_recipients: Optional[int] = None

    # Backup / retention / review
    frequency_hours: Optional[int] = None
    retention_days: Optional[int] = None
    review_frequency_days: Optional[int] = None
    reviewers: List[str] = []

    # Approval workflow
    approval_actions: List[str] = []

    custom_rules: List[PolicyRule] = []


class PolicyEnforcement(BaseModel):
    mode: PolicyMode = PolicyMode.ENFORCE
    actions: List[PolicyAction] = [PolicyAction.LOG]
    exempt_users: List[str] = []
    exempt_roles: List[str] = []
    notify_on_violation: bool = False
    block_on_violation: bool = True


class PolicyCreate(BaseModel):
    team_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    type: PolicyType
    enabled: bool = True
    config: PolicyConfig = PolicyConfig()
    enforcement: PolicyEnforcement = PolicyEnforcement()


class PolicyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    config: Optional[PolicyConfig] = None
    enforcement: Optional[PolicyEnforcement] = None


class PolicyResponse(BaseModel):
    id: str
    team_id: str
    name: str
    description: Optional[str]
    type: PolicyType
    enabled: bool
    config: PolicyConfig
    enforcement: PolicyEnforcement
    violation_count: int
    last_enforced_at: Optional[datetime]
    created_by: str
    created_at: datetime

    class Config:
        from_attributes = True


class ViolationSummary(BaseModel):
    id: str
    policy_id: str
    policy_name: str
    policy_type: PolicyType
    severity: Severity
    details: Dict[str, Any] = {}


class PolicyEvaluation(BaseModel):
    """Conjunction of every applicable policy's verdict"""
    allowed: bool = True
    violated: bool = False
    violations: List[ViolationSummary] = []
    warnings: List[str] = []
    requires_approval: bool = False
    applied_policies: List[str] = []


class PolicyViolationResponse(BaseModel):
    id: str
    team_id: str
    policy_id: str
    policy_name: str
    policy_type: str
    user_id: str
    user_email: Optional[str]
    timestamp: datetime
    action: str
    resource: Optional[str]
    details: Dict[str, Any]
    severity: Severity
    resolved: bool
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    resolution: Optional[str]

    class Config:
        from_attributes = True


class EvaluateRequest(BaseModel):
    team_id: str
    action: str
    resource: Optional[str] = None
    context: Dict[str, Any] = {}


class ResolveViolationRequest(BaseModel):
    resolution: str = Field(..., min_length=1)


class PasswordCheckRequest(BaseModel):
    password: str


class IPCheckRequest(BaseModel):
    ip_address: str
    country: Optional[str] = None


class PasswordCheckResult(BaseModel):
    valid: bool
    errors: List[str] = []


class CheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None


# ========== VAULTS ==========

class VaultSettings(BaseModel):
    require_approval: bool = False
    approvers: List[str] = []
    auto_lock_minutes: Optional[int] = None
    allow_export: bool = True
    allow_sharing: bool = True
    access_log: bool = True
    rotation_policy: Optional[Dict[str, Any]] = None


class VaultCreate(BaseModel):
    team_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    member_ids: List[str] = []
    settings: VaultSettings = VaultSettings()


class VaultUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    settings: Optional[VaultSettings] = None


class VaultResponse(BaseModel):
    id: str
    team_id: str
    name: str
    description: Optional[str]
    created_by: str
    member_ids: List[str]
    account_ids: List[str]
    settings: VaultSettings
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AccountRecord(BaseModel):
    """Credential metadata as returned by the credential store"""
    id: str
    owner_id: str
    issuer: str
    label: str

    class Config:
        from_attributes = True


class VaultOperationResult(BaseModel):
    """Outcome of a vault mutation that may have been staged for approval"""
    completed: bool
    approval_id: Optional[str] = None
    message: Optional[str] = None
    account: Optional[AccountRecord] = None


class AddAccountRequest(BaseModel):
    account_id: str
    notes: Optional[str] = None


class AddMemberRequest(BaseModel):
    member_id: str


class ApprovalCreate(BaseModel):
    action: VaultAction
    target_id: Optional[str] = None
    details: Dict[str, Any] = {}


class ApprovalDecision(BaseModel):
    approved: bool
    reason: Optional[str] = None


class VaultApprovalResponse(BaseModel):
    id: str
    vault_id: str
    requested_by: str
    requested_at: datetime
    action: str
    target_id: Optional[str]
    details: Dict[str, Any]
    status: str
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    reason: Optional[str]
    expires_at: datetime

    class Config:
        from_attributes = True


class VaultAccessLogResponse(BaseModel):
    id: str
    vault_id: str
    user_id: str
    action: str
    target_id: Optional[str]
    timestamp: datetime
    details: Dict[str, Any]

    class Config:
        from_attributes = True


# ========== PROVISIONING / SCIM ==========

DEFAULT_API_KEY_PERMISSIONS = ["users:read", "users:create", "users:update", "users:delete"]

SCIM_USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
SCIM_GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
SCIM_USER_EXTENSION = "urn:2fastudio:schemas:extension:enterprise:2.0:User"
SCIM_GROUP_EXTENSION = "urn:2fastudio:schemas:extension:enterprise:2.0:Group"


class SyncConfig(BaseModel):
    auto_provision: bool = True
    auto_deprovision: bool = False
    sync_groups: bool = False
    sync_attributes: List[str] = []
    default_role_id: Optional[str] = None
    default_vault_ids: List[str] = []


class ProvisioningConfigCreate(BaseModel):
    type: ProvisioningType = ProvisioningType.SCIM
    enabled: bool = True
    sync_config: SyncConfig = SyncConfig()


class ProvisioningConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    sync_config: Optional[SyncConfig] = None


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    permissions: List[str] = DEFAULT_API_KEY_PERMISSIONS
    expires_in_days: Optional[int] = Field(None, gt=0)
    ip_restrictions: List[str] = []


class IssuedApiKey(BaseModel):
    """Raw key is only ever returned here, at creation time"""
    key_id: str
    api_key: str
    key_prefix: str
    permissions: List[str]
    expires_at: Optional[datetime] = None


class SCIMName(BaseModel):
    given_name: Optional[str] = Field(None, alias="givenName")
    family_name: Optional[str] = Field(None, alias="familyName")

    class Config:
        populate_by_name = True


class SCIMEmail(BaseModel):
    value: str
    primary: bool = True
    type: str = "work"


class SCIMUserExtension(BaseModel):
    team_id: Optional[str] = Field(None, alias="teamId")
    role_id: Optional[str] = Field(None, alias="roleId")
    vault_ids: List[str] = Field(default_factory=list, alias="vaultIds")

    class Config:
        populate_by_name = True


class SCIMUser(BaseModel):
    schemas: List[str] = [SCIM_USER_SCHEMA, SCIM_USER_EXTENSION]
    id: Optional[str] = None
    external_id: Optional[str] = Field(None, alias="externalId")
    user_name: str = Field(..., alias="userName")
    name: Optional[SCIMName] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    emails: List[SCIMEmail] = []
    active: bool = True
    enterprise: Optional[SCIMUserExtension] = Field(None, alias=SCIM_USER_EXTENSION)

    class Config:
        populate_by_name = True

    @property
    def primary_email(self) -> str:
        for email in self.emails:
            if email.primary:
                return email.value
        return self.emails[0].value if self.emails else self.user_name


class SCIMUserPatch(BaseModel):
    display_name: Optional[str] = Field(None, alias="displayName")
    name: Optional[SCIMName] = None
    emails: Optional[List[SCIMEmail]] = None
    active: Optional[bool] = None
    enterprise: Optional[SCIMUserExtension] = Field(None, alias=SCIM_USER_EXTENSION)

    class Config:
        populate_by_name = True


class SCIMMember(BaseModel):
    value: str
    display: Optional[str] = None


class SCIMGroupExtension(BaseModel):
    team_id: Optional[str] = Field(None, alias="teamId")
    vault_id: Optional[str] = Field(None, alias="vaultId")

    class Config:
        populate_by_name = True


class SCIMGroup(BaseModel):
    schemas: List[str] = [SCIM_GROUP_SCHEMA, SCIM_GROUP_EXTENSION]
    id: Optional[str] = None
    external_id: Optional[str] = Field(None, alias="externalId")
    display_name: str = Field(..., alias="displayName")
    members: List[SCIMMember] = []
    enterprise: Optional[SCIMGroupExtension] = Field(None, alias=SCIM_GROUP_EXTENSION)

    class Config:
        populate_by_name = True


class IdentityRecord(BaseModel):
    """User record pulled from an external identity source during sync"""
    external_id: str
    email: str
    display_name: Optional[str] = None
    active: bool = True
    role_id: Optional[str] = None
    vault_ids: Optional[List[str]] = None


class SyncStatusResponse(BaseModel):
    team_id: str
    status: str
    last_sync_at: Optional[datetime]
    next_sync_at: Optional[datetime]
    stats: Dict[str, int]
    errors: List[Dict[str, Any]]

    class Config:
        from_attributes = True


class ProvisioningLogResponse(BaseModel):
    id: str
    team_id: str
    timestamp: datetime
    operation: str
    resource_type: str
    resource_id: Optional[str]
    external_id: Optional[str]
    status: str
    details: Dict[str, Any]
    error: Optional[str]

    class Config:
        from_attributes = True
