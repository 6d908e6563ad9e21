"""
Team Policy API Endpoints

Policy management, action evaluation, violation review and the pre-flight
password, session and network checks.
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..models.api import (
    CheckResult, EvaluateRequest, IPCheckRequest, PasswordCheckRequest, PasswordCheckResult,
    PolicyCreate, PolicyEvaluation, PolicyResponse, PolicyUpdate, PolicyViolationResponse,
    ResolveViolationRequest
)
from ..rbac.dependencies import request_context, require_audit_read, require_policy_read
from ..policy.service import policy_service

router = APIRouter(prefix="/policies", tags=["Team Policies"])


@router.post("", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    policy: PolicyCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    policy_id = await policy_service.create_policy(policy, current_user.id, db)
    return await policy_service.get_policy(policy_id, db)


@router.patch("/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    policy_id: str,
    updates: PolicyUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await policy_service.update_policy(policy_id, updates, current_user.id, db)
    return await policy_service.get_policy(policy_id, db)


@router.get("/teams/{team_id}", response_model=List[PolicyResponse])
async def list_team_policies(
    team_id: str,
    current_user: CurrentUser = Depends(require_policy_read),
    db: AsyncSession = Depends(get_db)
):
    """Enabled policies of a team"""
    return await policy_service.get_team_policies(team_id, db=db)


@router.post("/evaluate", response_model=PolicyEvaluation)
async def evaluate_action(
    body: EvaluateRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Evaluate an action the caller is about to take"""
    context = {**request_context(request), **body.context}
    return await policy_service.evaluate_policies(
        current_user.id, body.team_id, body.action, body.resource, context, db
    )


# ========== VIOLATIONS ==========

@router.get("/teams/{team_id}/violations", response_model=List[PolicyViolationResponse])
async def list_violations(
    team_id: str,
    days: int = Query(30, ge=1, le=365),
    resolved: Optional[bool] = Query(None),
    current_user: CurrentUser = Depends(require_audit_read),
    db: AsyncSession = Depends(get_db)
):
    return await policy_service.get_policy_violations(team_id, days, resolved, db)


@router.post("/violations/{violation_id}/resolve", status_code=status.HTTP_204_NO_CONTENT)
async def resolve_violation(
    violation_id: str,
    body: ResolveViolationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await policy_service.resolve_violation(violation_id, current_user.id, body.resolution, db)


# ========== PRE-FLIGHT CHECKS ==========

@router.post("/teams/{team_id}/check/password", response_model=PasswordCheckResult)
async def check_password(
    team_id: str,
    body: PasswordCheckRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await policy_service.check_password_policy(team_id, body.password, db)


@router.post("/teams/{team_id}/check/session", response_model=CheckResult)
async def check_session(
    team_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await policy_service.check_session_policy(team_id, current_user.id, db)


@router.post("/teams/{team_id}/check/ip", response_model=CheckResult)
async def check_ip(
    team_id: str,
    request: Request,
    body: Optional[IPCheckRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Check the given address, or the caller's own when none is supplied"""
    context = request_context(request)
    ip_address = body.ip_address if body else context.get("ip_address")
    if not ip_address:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="IP address required")
    country = body.country if body and body.country else context.get("country")
    return await policy_service.check_ip_policy(team_id, ip_address, country, db)
