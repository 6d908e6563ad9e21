"""
Shared team vaults with membership checks and an approval workflow.
"""

from .approvals import can_transition, effective_status, transition
from .service import vault_service, TeamVaultService

__all__ = [
    "vault_service",
    "TeamVaultService",
    "can_transition",
    "effective_status",
    "transition",
]
