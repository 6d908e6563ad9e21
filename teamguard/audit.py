from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .database import utcnow
from .models.rbac import AuditLog


def record_audit(
    db: AsyncSession,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    actor_id: str,
    affected_user_id: Optional[str] = None,
    team_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    audit_log = AuditLog(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        user_id=actor_id,
        affected_user_id=affected_user_id,
        team_id=team_id,
        timestamp=utcnow(),
        success=True,
        additional_data=details or {},
    )
    db.add(audit_log)
    return audit_log
