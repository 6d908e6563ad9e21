"""
Vault approval state machine

pending -> approved | denied | expired; every other status is terminal.
Expiry is derived from ``expires_at`` at read time, so an overdue approval is
reported as expired even before anything persists that status.
"""

from datetime import datetime
from typing import Dict, FrozenSet

from ..exceptions import ValidationError
from ..models.vault import ApprovalStatus, VaultApproval

TRANSITIONS: Dict[ApprovalStatus, FrozenSet[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.DENIED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.DENIED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
}


def effective_status(approval: VaultApproval, now: datetime) -> ApprovalStatus:
    status = ApprovalStatus(approval.status)
    if status == ApprovalStatus.PENDING and approval.expires_at <= now:
        return ApprovalStatus.EXPIRED
    return status


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(approval: VaultApproval, target: ApprovalStatus, now: datetime) -> None:
    """Move an approval to ``target`` or raise if the move is not allowed"""
    if not can_transition(ApprovalStatus(approval.status), target):
        raise ValidationError("Approval request is no longer pending")
    if target != ApprovalStatus.EXPIRED and approval.expires_at <= now:
        raise ValidationError("Approval request has expired")
    approval.status = target.value
