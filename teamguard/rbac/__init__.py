"""
RBAC Module Initialization

Role-based access control for TeamGuard: hierarchical resources, system and
custom roles, team-scoped assignments and cached permission checks.
"""

from .service import rbac_service, RBACService, SYSTEM_ACTOR, ADMIN_ROLE
from .dependencies import (
    require_permission,
    request_context,
    client_ip,
    # Common dependencies
    require_role_read,
    require_policy_read,
    require_audit_read
)

__all__ = [
    # Core service
    "rbac_service",
    "RBACService",
    "SYSTEM_ACTOR",
    "ADMIN_ROLE",

    # FastAPI dependencies
    "require_permission",
    "request_context",
    "client_ip",
    "require_role_read",
    "require_policy_read",
    "require_audit_read",
]
