"""
Access control exceptions

Raised by the write paths of the RBAC, policy, vault and provisioning
services. Read-path checks return structured results instead.
"""

from typing import Any, Dict, Optional


class AccessControlError(Exception):
    """Base class for all team access control errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AccessControlError):
    """Invalid input or a forbidden state transition"""


class NotFoundError(AccessControlError):
    """Referenced role, policy, vault, approval or account does not exist"""


class PermissionDeniedError(AccessControlError):
    """Actor lacks the permission required for the operation"""


class PolicyViolationError(PermissionDeniedError):
    """A team policy blocked the operation"""

    def __init__(self, message: str, violations: Optional[list] = None):
        super().__init__(message, {"violations": violations or []})
        self.violations = violations or []


class ApprovalRequiredError(AccessControlError):
    """Operation was staged as a pending approval instead of executing"""

    def __init__(self, message: str, approval_id: str):
        super().__init__(message, {"approval_id": approval_id})
        self.approval_id = approval_id


class ProvisioningAuthError(AccessControlError):
    """Provisioning API key could not be authenticated or authorized"""
