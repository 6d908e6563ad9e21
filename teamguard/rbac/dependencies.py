"""
FastAPI RBAC Dependencies

Permission-checking dependencies for TeamGuard endpoints, plus extraction of
the request facts (client IP, device, country) that policies evaluate.
"""

from typing import Any, Dict, Optional, Union
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..models.api import PermissionContext
from ..models.rbac import Action, Resource
from .service import rbac_service

logger = structlog.get_logger(__name__)


def client_ip(request: Request) -> Optional[str]:
    """Client address, honouring the first X-Forwarded-For hop"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_context(request: Request) -> Dict[str, Any]:
    """Facts about the caller that team policies evaluate"""
    context: Dict[str, Any] = {"ip_address": client_ip(request)}
    device_id = request.headers.get("x-device-id")
    if device_id:
        context["device_id"] = device_id
    country = request.headers.get("x-country")
    if country:
        context["country"] = country
    return context


def require_permission(resource: Union[Resource, str], action: Union[Action, str]):
    """
    Dependency requiring a permission on the team named by the request

    The team comes from the ``team_id`` path parameter or query string; when
    absent the check runs without team scope.
    """
    async def permission_checker(
        request: Request,
        current_user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db)
    ) -> CurrentUser:
        team_id = request.path_params.get("team_id") or request.query_params.get("team_id")
        check = await rbac_service.check_permission(
            current_user.id, resource, action, PermissionContext(team_id=team_id), db
        )
        if not check.allowed:
            logger.warning("Permission denied",
                           user_id=current_user.id, resource=str(resource),
                           action=str(action), reason=check.reason)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=check.reason or "Permission denied"
            )
        return current_user

    return permission_checker


# Common dependencies
require_role_read = require_permission(Resource.TEAM_ROLES, Action.READ)
require_policy_read = require_permission(Resource.SECURITY_POLICIES, Action.READ)
require_audit_read = require_permission(Resource.SECURITY_AUDIT, Action.READ)
