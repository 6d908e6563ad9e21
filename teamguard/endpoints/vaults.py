"""
Team Vault API Endpoints

Vault lifecycle, account and member management, credential access and the
approval workflow. Operations staged for approval answer 202 with the
approval id.
"""

from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..exceptions import PermissionDeniedError
from ..models.api import (
    AddAccountRequest, AddMemberRequest, ApprovalCreate, ApprovalDecision, VaultAccessLogResponse,
    VaultApprovalResponse, VaultCreate, VaultOperationResult, VaultResponse, VaultUpdate
)
from ..rbac.dependencies import request_context
from ..vault.service import vault_service

router = APIRouter(prefix="/vaults", tags=["Team Vaults"])


def _respond(result: VaultOperationResult, response: Response) -> VaultOperationResult:
    if not result.completed:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.post("", response_model=VaultResponse, status_code=status.HTTP_201_CREATED)
async def create_vault(
    vault: VaultCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    vault_id = await vault_service.create_vault(vault, current_user.id, db)
    return await vault_service.get_vault(vault_id, db)


@router.get("/teams/{team_id}", response_model=List[VaultResponse])
async def list_team_vaults(
    team_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Vaults of the team that the caller belongs to"""
    return await vault_service.get_team_vaults(team_id, current_user.id, db)


@router.get("/{vault_id}", response_model=VaultResponse)
async def get_vault(
    vault_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    vault = await vault_service.get_vault(vault_id, db)
    if not vault:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vault not found")
    if current_user.id not in (vault.member_ids or []):
        raise PermissionDeniedError("Access denied to vault")
    return vault


@router.patch("/{vault_id}", response_model=VaultOperationResult)
async def update_vault(
    vault_id: str,
    updates: VaultUpdate,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await vault_service.update_vault(
        vault_id, updates, current_user.id, request_context(request), db
    )
    return _respond(result, response)


# ========== ACCOUNTS ==========

@router.post("/{vault_id}/accounts", response_model=VaultOperationResult)
async def add_account(
    vault_id: str,
    body: AddAccountRequest,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await vault_service.add_account_to_vault(
        vault_id, body.account_id, current_user.id, body.notes, request_context(request), db
    )
    return _respond(result, response)


@router.delete("/{vault_id}/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_account(
    vault_id: str,
    account_id: str,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await vault_service.remove_account_from_vault(
        vault_id, account_id, current_user.id, request_context(request), db
    )


@router.post("/{vault_id}/accounts/{account_id}/access", response_model=VaultOperationResult)
async def access_account(
    vault_id: str,
    account_id: str,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await vault_service.access_vault_account(
        vault_id, account_id, current_user.id, request_context(request), db
    )
    return _respond(result, response)


# ========== MEMBERS ==========

@router.post("/{vault_id}/members", response_model=VaultOperationResult)
async def add_member(
    vault_id: str,
    body: AddMemberRequest,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await vault_service.add_member_to_vault(
        vault_id, body.member_id, current_user.id, request_context(request), db
    )
    return _respond(result, response)


@router.delete("/{vault_id}/members/{member_id}", response_model=VaultOperationResult)
async def remove_member(
    vault_id: str,
    member_id: str,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await vault_service.remove_member_from_vault(
        vault_id, member_id, current_user.id, request_context(request), db
    )
    return _respond(result, response)


# ========== APPROVALS ==========

@router.post("/{vault_id}/approvals", status_code=status.HTTP_201_CREATED)
async def request_approval(
    vault_id: str,
    body: ApprovalCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    approval_id = await vault_service.request_approval(
        vault_id, current_user.id, body.action, body.target_id, body.details, db
    )
    return {"id": approval_id}


@router.get("/{vault_id}/approvals", response_model=List[VaultApprovalResponse])
async def list_pending_approvals(
    vault_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    vault = await vault_service.get_vault(vault_id, db)
    if not vault:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vault not found")
    if current_user.id not in (vault.member_ids or []):
        raise PermissionDeniedError("Access denied to vault")
    return await vault_service.get_pending_approvals(vault_id, db)


@router.post("/approvals/{approval_id}", status_code=status.HTTP_204_NO_CONTENT)
async def process_approval(
    approval_id: str,
    decision: ApprovalDecision,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await vault_service.process_approval(approval_id, current_user.id, decision.approved, decision.reason, db)


# ========== ACCESS LOGS ==========

@router.get("/{vault_id}/logs", response_model=List[VaultAccessLogResponse])
async def get_access_logs(
    vault_id: str,
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(100, ge=1, le=1000),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await vault_service.get_vault_access_logs(vault_id, current_user.id, hours, limit, db)
