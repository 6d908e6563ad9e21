"""
SCIM 2.0 Provisioning Endpoints

Identity providers call these with a team provisioning API key as the Bearer
token. Key checks happen inside the provisioning service so that rejected
calls are still written to the provisioning log.
"""

from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..models.api import (
    ApiKeyCreate, IssuedApiKey, ProvisioningConfigCreate, ProvisioningConfigUpdate,
    ProvisioningLogResponse, SCIMGroup, SCIMUser, SCIMUserPatch, SyncStatusResponse
)
from ..models.rbac import Action, Resource
from ..provisioning.service import provisioning_service
from ..rbac.dependencies import client_ip, require_permission

router = APIRouter(prefix="/scim/v2/teams/{team_id}", tags=["SCIM Provisioning"])

api_key_scheme = HTTPBearer()

require_settings_read = require_permission(Resource.ADMIN_SETTINGS, Action.READ)


# ========== SCIM USERS ==========

@router.post("/Users", response_model=SCIMUser, response_model_by_alias=True,
             status_code=status.HTTP_201_CREATED)
async def create_user(
    team_id: str,
    user: SCIMUser,
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(api_key_scheme),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.create_scim_user(
        team_id, user, credentials.credentials, client_ip(request), db
    )


@router.get("/Users/{user_id}", response_model=SCIMUser, response_model_by_alias=True)
async def get_user(
    team_id: str,
    user_id: str,
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(api_key_scheme),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.get_scim_user(
        team_id, user_id, credentials.credentials, client_ip(request), db
    )


@router.patch("/Users/{user_id}", response_model=SCIMUser, response_model_by_alias=True)
async def update_user(
    team_id: str,
    user_id: str,
    updates: SCIMUserPatch,
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(api_key_scheme),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.update_scim_user(
        team_id, user_id, updates, credentials.credentials, client_ip(request), db
    )


@router.delete("/Users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    team_id: str,
    user_id: str,
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(api_key_scheme),
    db: AsyncSession = Depends(get_db)
):
    await provisioning_service.delete_scim_user(
        team_id, user_id, credentials.credentials, client_ip(request), db
    )


# ========== SCIM GROUPS ==========

@router.post("/Groups", response_model=SCIMGroup, response_model_by_alias=True,
             status_code=status.HTTP_201_CREATED)
async def create_group(
    team_id: str,
    group: SCIMGroup,
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(api_key_scheme),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.create_scim_group(
        team_id, group, credentials.credentials, client_ip(request), db
    )


# ========== ADMINISTRATION (user JWT) ==========

admin_router = APIRouter(prefix="/provisioning/teams/{team_id}", tags=["Provisioning Admin"])


@admin_router.post("", response_model=IssuedApiKey, status_code=status.HTTP_201_CREATED)
async def initialize_provisioning(
    team_id: str,
    config: ProvisioningConfigCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Enable provisioning; the returned key is shown only once"""
    return await provisioning_service.initialize_provisioning(team_id, config, current_user.id, db)


@admin_router.patch("", status_code=status.HTTP_204_NO_CONTENT)
async def update_provisioning(
    team_id: str,
    updates: ProvisioningConfigUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await provisioning_service.update_provisioning_config(team_id, updates, current_user.id, db)


@admin_router.post("/keys", response_model=IssuedApiKey, status_code=status.HTTP_201_CREATED)
async def add_api_key(
    team_id: str,
    body: ApiKeyCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.add_api_key(
        team_id, body.name, body.permissions, current_user.id,
        body.expires_in_days, body.ip_restrictions, db
    )


@admin_router.delete("/keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    team_id: str,
    key_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await provisioning_service.revoke_api_key(team_id, key_id, current_user.id, db)


@admin_router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    team_id: str,
    current_user: CurrentUser = Depends(require_settings_read),
    db: AsyncSession = Depends(get_db)
):
    status_row = await provisioning_service.get_sync_status(team_id, db)
    if status_row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provisioning not configured for this team")
    return status_row


@admin_router.get("/logs", response_model=List[ProvisioningLogResponse])
async def get_provisioning_logs(
    team_id: str,
    limit: int = Query(100, ge=1, le=1000),
    current_user: CurrentUser = Depends(require_settings_read),
    db: AsyncSession = Depends(get_db)
):
    return await provisioning_service.get_provisioning_logs(team_id, limit, db)
