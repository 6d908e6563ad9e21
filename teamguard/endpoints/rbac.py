"""
RBAC Management API Endpoints

Role listing and management, role assignment and revocation, permission
checks and effective-permission lookups.
"""

from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..models.api import (
    EffectivePermissions, PermissionCheck, PermissionCheckRequest, PermissionContext,
    RoleAssignmentRequest, RoleCreate, RoleResponse, RoleUpdate, UserRoleResponse
)
from ..models.rbac import Action, Resource
from ..rbac.dependencies import require_role_read
from ..rbac.service import rbac_service

router = APIRouter(prefix="/rbac", tags=["RBAC Management"])


async def _require_self_or(
    current_user: CurrentUser,
    user_id: str,
    team_id: Optional[str],
    db: AsyncSession
) -> None:
    """Users may inspect themselves; anyone else needs team role read access"""
    if user_id == current_user.id:
        return
    check = await rbac_service.check_permission(
        current_user.id, Resource.TEAM_ROLES, Action.READ, PermissionContext(team_id=team_id), db
    )
    if not check.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=check.reason or "Permission denied")


# ========== ROLE MANAGEMENT ENDPOINTS ==========

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    team_id: Optional[str] = Query(None, description="Team the caller acts for"),
    current_user: CurrentUser = Depends(require_role_read),
    db: AsyncSession = Depends(get_db)
):
    """List system and custom roles, highest priority first"""
    return await rbac_service.get_roles(db)


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(require_role_read),
    db: AsyncSession = Depends(get_db)
):
    role = await rbac_service.get_role(role_id, db)
    if not role:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")
    return role


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    role_id = await rbac_service.create_role(role, current_user.id, team_id, db)
    return await rbac_service.get_role(role_id, db)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    updates: RoleUpdate,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await rbac_service.update_role(role_id, updates, current_user.id, team_id, db)
    return await rbac_service.get_role(role_id, db)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await rbac_service.delete_role(role_id, current_user.id, team_id, db)


# ========== ROLE ASSIGNMENT ENDPOINTS ==========

@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def assign_role(
    request: RoleAssignmentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, str]:
    assignment_id = await rbac_service.assign_role(
        request.user_id, request.role_id, current_user.id,
        request.team_id, request.expires_at, db
    )
    return {"id": assignment_id}


@router.post("/assignments/revoke", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_role(
    request: RoleAssignmentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await rbac_service.revoke_role(request.user_id, request.role_id, current_user.id, request.team_id, db)


# ========== PERMISSION ENDPOINTS ==========

@router.post("/check", response_model=PermissionCheck)
async def check_permission(
    request: PermissionCheckRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Check a permission for the caller, or for another user with role read access"""
    user_id = request.user_id or current_user.id
    context = request.context or PermissionContext()
    await _require_self_or(current_user, user_id, context.team_id, db)
    return await rbac_service.check_permission(user_id, request.resource, request.action, context, db)


@router.get("/users/{user_id}/permissions", response_model=EffectivePermissions)
async def get_user_permissions(
    user_id: str,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await _require_self_or(current_user, user_id, team_id, db)
    return await rbac_service.get_user_permissions(user_id, team_id, db)


@router.get("/users/{user_id}/roles", response_model=List[UserRoleResponse])
async def get_user_roles(
    user_id: str,
    team_id: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await _require_self_or(current_user, user_id, team_id, db)
    return await rbac_service.get_user_roles(user_id, team_id, db)
