"""
Team Vault Service for TeamGuard

Shared vault authorization: membership, account membership, and the approval
workflow that defers privileged vault operations until an approver signs off.
Every state change and every account access is appended to the vault access
log in the same transaction as the change itself.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import structlog

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, delete, inspect, select

from ..collaborators import (
    CredentialStore, DatabaseCredentialStore, LoggingNotificationDispatcher, NotificationDispatcher
)
from ..config import APPROVAL_EXPIRY_HOURS
from ..database import utcnow
from ..exceptions import (
    ApprovalRequiredError, NotFoundError, PermissionDeniedError, PolicyViolationError, ValidationError
)
from ..models.api import (
    AccountRecord, PermissionContext, VaultCreate, VaultOperationResult, VaultSettings, VaultUpdate
)
from ..models.rbac import Action, Resource
from ..models.vault import (
    ApprovalStatus, TeamVault, VaultAccessLog, VaultAccount, VaultAction, VaultApproval
)
from ..policy.service import PolicyEnforcementService, policy_service
from ..rbac.service import RBACService, SYSTEM_ACTOR, rbac_service
from .approvals import effective_status, transition

logger = structlog.get_logger(__name__)

APPROVAL_REQUIRED = "Approval required"

# Permission each deferrable action needs, matching its direct operation.
# Account access is gated on vault membership instead.
DEFERRED_PERMISSIONS: Dict[VaultAction, Optional[Tuple[Resource, Action]]] = {
    VaultAction.VAULT_UPDATED: (Resource.VAULTS, Action.UPDATE),
    VaultAction.SETTINGS_UPDATED: (Resource.VAULTS, Action.UPDATE),
    VaultAction.ACCOUNT_ADDED: (Resource.VAULTS, Action.UPDATE),
    VaultAction.ACCOUNT_REMOVED: (Resource.VAULTS_UPDATE, Action.UPDATE),
    VaultAction.MEMBER_ADDED: (Resource.VAULTS_SHARE, Action.SHARE),
    VaultAction.MEMBER_REMOVED: (Resource.VAULTS_SHARE, Action.SHARE),
    VaultAction.ACCOUNT_ACCESSED: None,
}


class TeamVaultService:
    """Vault membership, account membership and approval workflow"""

    def __init__(
        self,
        rbac: Optional[RBACService] = None,
        policy: Optional[PolicyEnforcementService] = None,
        credentials: Optional[CredentialStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
        approval_expiry_hours: int = APPROVAL_EXPIRY_HOURS
    ):
        self.rbac = rbac or rbac_service
        self.policy = policy or policy_service
        self.credentials = credentials or DatabaseCredentialStore()
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.approval_expiry = timedelta(hours=approval_expiry_hours)

    # ========== HELPERS ==========

    async def _get_vault_or_raise(self, vault_id: str, db: AsyncSession) -> TeamVault:
        vault = await db.get(TeamVault, vault_id)
        if not vault:
            raise NotFoundError("Vault not found")
        return vault

    @staticmethod
    def _settings(vault: TeamVault) -> VaultSettings:
        return VaultSettings.model_validate(vault.settings or {})

    @staticmethod
    def _context(vault: TeamVault) -> PermissionContext:
        return PermissionContext(team_id=vault.team_id, resource_id=vault.id)

    def _log(
        self,
        db: AsyncSession,
        vault_id: str,
        user_id: str,
        action: VaultAction,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        db.add(VaultAccessLog(
            vault_id=vault_id,
            user_id=user_id,
            action=action.value,
            target_id=target_id,
            timestamp=utcnow(),
            details=details or {},
        ))

    @staticmethod
    async def _reload(db: AsyncSession, *instances) -> None:
        """Refresh rows expired by a rollback inside policy evaluation"""
        for instance in instances:
            if inspect(instance).expired_attributes:
                await db.refresh(instance)

    async def _requires_approval(
        self,
        vault: TeamVault,
        actor_id: str,
        action: VaultAction,
        target_id: Optional[str],
        context: Optional[Dict[str, Any]],
        db: AsyncSession
    ) -> bool:
        """Run team policies for the action and decide whether it needs sign-off"""
        if actor_id == SYSTEM_ACTOR:
            return False

        evaluation = await self.policy.evaluate_policies(
            actor_id, vault.team_id, action.value,
            resource=f"vault:{vault.id}",
            context={**(context or {}), "vault_id": vault.id, "target_id": target_id},
            db=db,
        )
        if not evaluation.allowed:
            raise PolicyViolationError(
                "Action blocked by team policy",
                [v.model_dump(mode="json") for v in evaluation.violations],
            )
        await self._reload(db, vault)

        settings = self._settings(vault)
        if actor_id in settings.approvers:
            return False
        return settings.require_approval or evaluation.requires_approval

    async def _stage_approval(
        self,
        vault: TeamVault,
        requested_by: str,
        action: VaultAction,
        target_id: Optional[str],
        details: Dict[str, Any],
        db: AsyncSession
    ) -> VaultApproval:
        now = utcnow()
        approval = VaultApproval(
            vault_id=vault.id,
            requested_by=requested_by,
            requested_at=now,
            action=action.value,
            target_id=target_id,
            details=details,
            status=ApprovalStatus.PENDING.value,
            expires_at=now + self.approval_expiry,
        )
        db.add(approval)
        await db.flush()

        self._log(db, vault.id, requested_by, VaultAction.APPROVAL_REQUESTED, target_id,
                  {"action": action.value, "approval_id": approval.id})
        return approval

    async def _notify_approvers(self, vault: TeamVault, approval: VaultApproval) -> None:
        for approver_id in self._settings(vault).approvers:
            try:
                await self.notifier.notify_user(
                    approver_id, "Vault approval requested",
                    f"{approval.requested_by} requested {approval.action} on vault {vault.name}"
                )
            except Exception as e:
                logger.error("Approver notification failed",
                             approval_id=approval.id, approver_id=approver_id, error=str(e))

    def _pending(self, approval: VaultApproval, message: str = APPROVAL_REQUIRED) -> VaultOperationResult:
        return VaultOperationResult(completed=False, approval_id=approval.id, message=message)

    # ========== STATE CHANGES (shared by direct and approved execution) ==========

    def _apply_vault_update(
        self,
        vault: TeamVault,
        changes: Dict[str, Any],
        actor_id: str,
        db: AsyncSession,
        approval_id: Optional[str] = None
    ) -> None:
        if "name" in changes and changes["name"]:
            vault.name = changes["name"]
        if "description" in changes:
            vault.description = changes["description"]
        if changes.get("settings") is not None:
            vault.settings = VaultSettings.model_validate(changes["settings"]).model_dump(mode="json")
        vault.updated_at = utcnow()

        action = VaultAction.SETTINGS_UPDATED if changes.get("settings") is not None else VaultAction.VAULT_UPDATED
        details: Dict[str, Any] = {"changes": changes}
        if approval_id:
            details["approval_id"] = approval_id
        self._log(db, vault.id, actor_id, action, vault.id, details)

    def _add_account(
        self,
        vault: TeamVault,
        account: AccountRecord,
        actor_id: str,
        notes: Optional[str],
        db: AsyncSession,
        approval_id: Optional[str] = None
    ) -> None:
        vault.account_ids = list(vault.account_ids or []) + [account.id]
        vault.updated_at = utcnow()
        db.add(VaultAccount(
            vault_id=vault.id,
            account_id=account.id,
            added_by=actor_id,
            added_at=utcnow(),
            notes=notes,
        ))
        details: Dict[str, Any] = {"account_name": account.label, "issuer": account.issuer}
        if approval_id:
            details["approval_id"] = approval_id
        self._log(db, vault.id, actor_id, VaultAction.ACCOUNT_ADDED, account.id, details)

    async def _remove_account(
        self,
        vault: TeamVault,
        account_id: str,
        actor_id: str,
        db: AsyncSession,
        approval_id: Optional[str] = None
    ) -> None:
        await db.execute(
            delete(VaultAccount).where(
                and_(VaultAccount.vault_id == vault.id, VaultAccount.account_id == account_id)
            )
        )
        vault.account_ids = [a for a in vault.account_ids or [] if a != account_id]
        vault.updated_at = utcnow()
        details = {"approval_id": approval_id} if approval_id else {}
        self._log(db, vault.id, actor_id, VaultAction.ACCOUNT_REMOVED, account_id, details)

    def _add_member(
        self,
        vault: TeamVault,
        member_id: str,
        actor_id: str,
        db: AsyncSession,
        approval_id: Optional[str] = None
    ) -> None:
        vault.member_ids = list(vault.member_ids or []) + [member_id]
        vault.updated_at = utcnow()
        details = {"approval_id": approval_id} if approval_id else {}
        self._log(db, vault.id, actor_id, VaultAction.MEMBER_ADDED, member_id, details)

    def _remove_member(
        self,
        vault: TeamVault,
        member_id: str,
        actor_id: str,
        db: AsyncSession,
        approval_id: Optional[str] = None
    ) -> None:
        vault.member_ids = [m for m in vault.member_ids or [] if m != member_id]
        vault.updated_at = utcnow()
        details = {"approval_id": approval_id} if approval_id else {}
        self._log(db, vault.id, actor_id, VaultAction.MEMBER_REMOVED, member_id, details)

    async def _owned_account(self, account_id: str, owner_id: str) -> AccountRecord:
        account = await self.credentials.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        if account.owner_id != owner_id:
            raise PermissionDeniedError("Account not found or access denied")
        return account

    async def _authorize_deferred(
        self,
        vault: TeamVault,
        actor_id: str,
        action: VaultAction,
        db: AsyncSession
    ) -> None:
        """Apply the check the direct form of a deferrable action applies"""
        if action not in DEFERRED_PERMISSIONS:
            raise ValidationError(f"Unsupported approval action: {action.value}")
        if actor_id == SYSTEM_ACTOR:
            return

        required = DEFERRED_PERMISSIONS[action]
        if required is None:
            if actor_id not in (vault.member_ids or []):
                raise PermissionDeniedError("Access denied to vault")
            return

        resource, permission = required
        await self.rbac.require_permission(
            actor_id, resource, permission, self._context(vault),
            f"Insufficient permissions to request {action.value}", db
        )

    # ========== VAULT LIFECYCLE ==========

    async def create_vault(
        self,
        vault: VaultCreate,
        creator_id: str,
        db: AsyncSession = None
    ) -> str:
        """Create a vault; the creator is always its first member"""
        try:
            await self.rbac.require_permission(
                creator_id, Resource.VAULTS_CREATE, Action.CREATE,
                PermissionContext(team_id=vault.team_id),
                "Insufficient permissions to create vaults", db
            )

            member_ids = [creator_id]
            for member_id in vault.member_ids:
                if member_id not in member_ids:
                    member_ids.append(member_id)

            new_vault = TeamVault(
                name=vault.name,
                description=vault.description,
                team_id=vault.team_id,
                created_by=creator_id,
                member_ids=member_ids,
                account_ids=[],
                settings=vault.settings.model_dump(mode="json"),
            )
            db.add(new_vault)
            await db.flush()

            self._log(db, new_vault.id, creator_id, VaultAction.VAULT_CREATED, new_vault.id,
                      {"vault_name": vault.name})
            await db.commit()

        except Exception as e:
            logger.error("Failed to create vault", team_id=vault.team_id, name=vault.name, error=str(e))
            await db.rollback()
            raise

        logger.info("Vault created", vault_id=new_vault.id, team_id=vault.team_id, creator_id=creator_id)
        return new_vault.id

    async def update_vault(
        self,
        vault_id: str,
        updates: VaultUpdate,
        updater_id: str,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> VaultOperationResult:
        """Update vault name, description or settings"""
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            await self.rbac.require_permission(
                updater_id, Resource.VAULTS, Action.UPDATE, self._context(vault),
                "Insufficient permissions to update vault", db
            )

            changes = updates.model_dump(exclude_unset=True, mode="json")
            action = VaultAction.SETTINGS_UPDATED if changes.get("settings") is not None else VaultAction.VAULT_UPDATED
            if await self._requires_approval(vault, updater_id, action, vault_id, context, db):
                approval = await self._stage_approval(
                    vault, updater_id, action, vault_id, {"changes": changes}, db
                )
                await db.commit()
                await self._notify_approvers(vault, approval)
                return self._pending(approval)

            self._apply_vault_update(vault, changes, updater_id, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to update vault", vault_id=vault_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Vault updated", vault_id=vault_id, updater_id=updater_id)
        return VaultOperationResult(completed=True)

    # ========== ACCOUNT MEMBERSHIP ==========

    async def add_account_to_vault(
        self,
        vault_id: str,
        account_id: str,
        adder_id: str,
        notes: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> VaultOperationResult:
        """Add one of the adder's own accounts to the vault"""
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            await self.rbac.require_permission(
                adder_id, Resource.VAULTS, Action.UPDATE, self._context(vault),
                "Insufficient permissions to add accounts to vault", db
            )

            account = await self._owned_account(account_id, adder_id)
            if account_id in (vault.account_ids or []):
                raise ValidationError("Account is already in this vault")

            if await self._requires_approval(vault, adder_id, VaultAction.ACCOUNT_ADDED, account_id, context, db):
                approval = await self._stage_approval(
                    vault, adder_id, VaultAction.ACCOUNT_ADDED, account_id,
                    {"account_name": account.label, "notes": notes}, db
                )
                await db.commit()
                await self._notify_approvers(vault, approval)
                return self._pending(approval)

            self._add_account(vault, account, adder_id, notes, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to add account to vault",
                         vault_id=vault_id, account_id=account_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Account added to vault", vault_id=vault_id, account_id=account_id)
        return VaultOperationResult(completed=True, account=account)

    async def remove_account_from_vault(
        self,
        vault_id: str,
        account_id: str,
        remover_id: str,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> None:
        """Remove an account; raises ApprovalRequiredError when staged"""
        approval = None
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            await self.rbac.require_permission(
                remover_id, Resource.VAULTS_UPDATE, Action.UPDATE, self._context(vault),
                "Insufficient permissions to remove accounts from vault", db
            )

            if account_id not in (vault.account_ids or []):
                raise NotFoundError("Account not found in vault")

            if await self._requires_approval(vault, remover_id, VaultAction.ACCOUNT_REMOVED, account_id, context, db):
                approval = await self._stage_approval(
                    vault, remover_id, VaultAction.ACCOUNT_REMOVED, account_id, {}, db
                )
            else:
                await self._remove_account(vault, account_id, remover_id, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to remove account from vault",
                         vault_id=vault_id, account_id=account_id, error=str(e))
            await db.rollback()
            raise

        if approval is not None:
            await self._notify_approvers(vault, approval)
            raise ApprovalRequiredError("Approval required to remove account from vault", approval.id)

        logger.info("Account removed from vault", vault_id=vault_id, account_id=account_id)

    # ========== MEMBERSHIP ==========

    async def add_member_to_vault(
        self,
        vault_id: str,
        member_id: str,
        adder_id: str,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> VaultOperationResult:
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            await self.rbac.require_permission(
                adder_id, Resource.VAULTS_SHARE, Action.SHARE, self._context(vault),
                "Insufficient permissions to add member to vault", db
            )

            if member_id in (vault.member_ids or []):
                raise ValidationError("User is already a member of this vault")
            if not self._settings(vault).allow_sharing:
                raise ValidationError("Sharing is disabled for this vault")

            if await self._requires_approval(vault, adder_id, VaultAction.MEMBER_ADDED, member_id, context, db):
                approval = await self._stage_approval(
                    vault, adder_id, VaultAction.MEMBER_ADDED, member_id, {}, db
                )
                await db.commit()
                await self._notify_approvers(vault, approval)
                return self._pending(approval)

            self._add_member(vault, member_id, adder_id, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to add member to vault", vault_id=vault_id, member_id=member_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Member added to vault", vault_id=vault_id, member_id=member_id)
        return VaultOperationResult(completed=True)

    async def remove_member_from_vault(
        self,
        vault_id: str,
        member_id: str,
        remover_id: str,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> VaultOperationResult:
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            await self.rbac.require_permission(
                remover_id, Resource.VAULTS_SHARE, Action.SHARE, self._context(vault),
                "Insufficient permissions to remove member from vault", db
            )

            if member_id == vault.created_by:
                raise ValidationError("Cannot remove vault creator")
            if member_id not in (vault.member_ids or []):
                raise NotFoundError("User is not a member of this vault")

            if await self._requires_approval(vault, remover_id, VaultAction.MEMBER_REMOVED, member_id, context, db):
                approval = await self._stage_approval(
                    vault, remover_id, VaultAction.MEMBER_REMOVED, member_id, {}, db
                )
                await db.commit()
                await self._notify_approvers(vault, approval)
                return self._pending(approval)

            self._remove_member(vault, member_id, remover_id, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to remove member from vault", vault_id=vault_id, member_id=member_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Member removed from vault", vault_id=vault_id, member_id=member_id)
        return VaultOperationResult(completed=True)

    # ========== ACCESS ==========

    async def access_vault_account(
        self,
        vault_id: str,
        account_id: str,
        user_id: str,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> VaultOperationResult:
        """Read a credential through the vault, logging the access"""
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            if user_id not in (vault.member_ids or []):
                raise PermissionDeniedError("Access denied to vault")
            if account_id not in (vault.account_ids or []):
                raise NotFoundError("Account not found in vault")

            result = await db.execute(
                select(VaultAccount).where(
                    and_(VaultAccount.vault_id == vault_id, VaultAccount.account_id == account_id)
                )
            )
            join = result.scalars().first()
            if not join:
                raise NotFoundError("Account not found in vault")

            account = await self.credentials.get_account(account_id)
            if not account:
                raise NotFoundError("Account not found")

            can_view = (join.permissions or {}).get("can_view")
            if can_view is not None and user_id not in can_view:
                raise PermissionDeniedError("Account not found or access denied")

            needs_approval = await self._requires_approval(
                vault, user_id, VaultAction.ACCOUNT_ACCESSED, account_id, context, db
            )
            await self._reload(db, join)
            if needs_approval:
                grant = await self._approved_access(vault_id, account_id, user_id, db)
                if grant is None:
                    approval = await self._stage_approval(
                        vault, user_id, VaultAction.ACCOUNT_ACCESSED, account_id,
                        {"account_name": account.label}, db
                    )
                    await db.commit()
                    await self._notify_approvers(vault, approval)
                    return self._pending(approval)
                grant.consumed_at = utcnow()

            now = utcnow()
            join.access_count = (join.access_count or 0) + 1
            join.last_accessed_at = now
            join.last_accessed_by = user_id
            self._log(db, vault_id, user_id, VaultAction.ACCOUNT_ACCESSED, account_id,
                      {"account_name": account.label})
            await db.commit()

        except Exception as e:
            logger.error("Failed to access vault account",
                         vault_id=vault_id, account_id=account_id, user_id=user_id, error=str(e))
            await db.rollback()
            raise

        return VaultOperationResult(completed=True, account=account)

    async def _approved_access(
        self,
        vault_id: str,
        account_id: str,
        user_id: str,
        db: AsyncSession
    ) -> Optional[VaultApproval]:
        """Unused, unexpired approval for this exact access"""
        result = await db.execute(
            select(VaultApproval).where(
                and_(
                    VaultApproval.vault_id == vault_id,
                    VaultApproval.requested_by == user_id,
                    VaultApproval.action == VaultAction.ACCOUNT_ACCESSED.value,
                    VaultApproval.target_id == account_id,
                    VaultApproval.status == ApprovalStatus.APPROVED.value,
                    VaultApproval.consumed_at.is_(None),
                    VaultApproval.expires_at > utcnow()
                )
            ).order_by(VaultApproval.resolved_at)
        )
        return result.scalars().first()

    # ========== APPROVALS ==========

    async def request_approval(
        self,
        vault_id: str,
        requested_by: str,
        action: VaultAction,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> str:
        """Open a pending approval for a vault operation"""
        try:
            vault = await self._get_vault_or_raise(vault_id, db)
            action = VaultAction(action)
            await self._authorize_deferred(vault, requested_by, action, db)
            approval = await self._stage_approval(
                vault, requested_by, action, target_id, details or {}, db
            )
            await db.commit()

        except Exception as e:
            logger.error("Failed to request approval", vault_id=vault_id, action=str(action), error=str(e))
            await db.rollback()
            raise

        await self._notify_approvers(vault, approval)
        logger.info("Approval requested", approval_id=approval.id, vault_id=vault_id, action=approval.action)
        return approval.id

    async def process_approval(
        self,
        approval_id: str,
        approver_id: str,
        approved: bool,
        reason: Optional[str] = None,
        db: AsyncSession = None
    ) -> None:
        """Approve or deny a pending request, executing it when approved"""
        expired = False
        try:
            approval = await db.get(VaultApproval, approval_id)
            if not approval:
                raise NotFoundError("Approval request not found")

            now = utcnow()
            status = effective_status(approval, now)
            if status == ApprovalStatus.EXPIRED and approval.status == ApprovalStatus.PENDING.value:
                self._expire(approval, now, db)
                expired = True
            elif status != ApprovalStatus.PENDING:
                raise ValidationError("Approval request is no longer pending")
            else:
                vault = await db.get(TeamVault, approval.vault_id)
                if not vault:
                    raise NotFoundError("Vault not found")
                if approver_id == approval.requested_by:
                    raise ValidationError("Cannot approve your own request")
                if not await self._is_approver(vault, approver_id, db):
                    raise PermissionDeniedError("Not authorized to approve this request")

                target = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
                transition(approval, target, now)
                approval.resolved_by = approver_id
                approval.resolved_at = now
                approval.reason = reason

                self._log(db, vault.id, approver_id,
                          VaultAction.APPROVAL_GRANTED if approved else VaultAction.APPROVAL_DENIED,
                          approval.target_id, {"approval_id": approval_id, "reason": reason})

                if approved:
                    await self._execute_approved_action(approval, vault, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to process approval", approval_id=approval_id, error=str(e))
            await db.rollback()
            raise

        if expired:
            raise ValidationError("Approval request has expired")
        logger.info("Approval processed", approval_id=approval_id, approved=approved, approver_id=approver_id)

    async def _is_approver(self, vault: TeamVault, approver_id: str, db: AsyncSession) -> bool:
        if approver_id in self._settings(vault).approvers:
            return True
        check = await self.rbac.check_permission(
            approver_id, Resource.VAULTS, Action.APPROVE, self._context(vault), db
        )
        return check.allowed

    def _expire(self, approval: VaultApproval, now, db: AsyncSession) -> None:
        transition(approval, ApprovalStatus.EXPIRED, now)
        approval.resolved_at = now
        self._log(db, approval.vault_id, SYSTEM_ACTOR, VaultAction.APPROVAL_EXPIRED,
                  approval.target_id, {"approval_id": approval.id})

    async def _execute_approved_action(
        self,
        approval: VaultApproval,
        vault: TeamVault,
        db: AsyncSession
    ) -> None:
        """Replay the deferred operation, re-validating current state first"""
        action = VaultAction(approval.action)
        requester = approval.requested_by
        target_id = approval.target_id

        # Requester must still hold the permission at execution time
        await self._authorize_deferred(vault, requester, action, db)

        if action in (VaultAction.VAULT_UPDATED, VaultAction.SETTINGS_UPDATED):
            self._apply_vault_update(vault, approval.details.get("changes", {}), requester, db, approval.id)

        elif action == VaultAction.ACCOUNT_ADDED:
            account = await self._owned_account(target_id, requester)
            if target_id in (vault.account_ids or []):
                raise ValidationError("Account is already in this vault")
            self._add_account(vault, account, requester, approval.details.get("notes"), db, approval.id)

        elif action == VaultAction.ACCOUNT_REMOVED:
            if target_id not in (vault.account_ids or []):
                raise NotFoundError("Account not found in vault")
            await self._remove_account(vault, target_id, requester, db, approval.id)

        elif action == VaultAction.MEMBER_ADDED:
            if target_id in (vault.member_ids or []):
                raise ValidationError("User is already a member of this vault")
            if not self._settings(vault).allow_sharing:
                raise ValidationError("Sharing is disabled for this vault")
            self._add_member(vault, target_id, requester, db, approval.id)

        elif action == VaultAction.MEMBER_REMOVED:
            if target_id == vault.created_by:
                raise ValidationError("Cannot remove vault creator")
            if target_id not in (vault.member_ids or []):
                raise NotFoundError("User is not a member of this vault")
            self._remove_member(vault, target_id, requester, db, approval.id)

        elif action == VaultAction.ACCOUNT_ACCESSED:
            # Consumed by the requester's next access
            pass

        else:
            raise ValidationError(f"Unsupported approval action: {action.value}")

    async def expire_stale_approvals(self, db: AsyncSession = None) -> int:
        """Mark overdue pending approvals as expired"""
        try:
            now = utcnow()
            result = await db.execute(
                select(VaultApproval).where(
                    and_(
                        VaultApproval.status == ApprovalStatus.PENDING.value,
                        VaultApproval.expires_at <= now
                    )
                )
            )
            stale = list(result.scalars().all())
            for approval in stale:
                self._expire(approval, now, db)
            await db.commit()

        except Exception as e:
            logger.error("Failed to expire approvals", error=str(e))
            await db.rollback()
            raise

        if stale:
            logger.info("Expired stale approvals", count=len(stale))
        return len(stale)

    # ========== QUERIES ==========

    async def get_vault(self, vault_id: str, db: AsyncSession = None) -> Optional[TeamVault]:
        return await db.get(TeamVault, vault_id)

    async def get_team_vaults(self, team_id: str, user_id: str, db: AsyncSession = None) -> List[TeamVault]:
        """Vaults of a team that the user is a member of"""
        await self.rbac.require_permission(
            user_id, Resource.VAULTS_READ, Action.READ, PermissionContext(team_id=team_id),
            "Insufficient permissions to view team vaults", db
        )
        result = await db.execute(
            select(TeamVault).where(TeamVault.team_id == team_id).order_by(TeamVault.created_at)
        )
        return [v for v in result.scalars().all() if user_id in (v.member_ids or [])]

    async def get_vault_accounts(self, vault_id: str, db: AsyncSession = None) -> List[VaultAccount]:
        result = await db.execute(
            select(VaultAccount).where(VaultAccount.vault_id == vault_id).order_by(VaultAccount.added_at)
        )
        return list(result.scalars().all())

    async def get_pending_approvals(self, vault_id: str, db: AsyncSession = None) -> List[VaultApproval]:
        result = await db.execute(
            select(VaultApproval).where(
                and_(
                    VaultApproval.vault_id == vault_id,
                    VaultApproval.status == ApprovalStatus.PENDING.value,
                    VaultApproval.expires_at > utcnow()
                )
            ).order_by(VaultApproval.requested_at)
        )
        return list(result.scalars().all())

    async def get_vault_access_logs(
        self,
        vault_id: str,
        requester_id: str,
        hours: int = 24,
        limit: int = 100,
        db: AsyncSession = None
    ) -> List[VaultAccessLog]:
        """Recent access log entries, newest first"""
        vault = await self._get_vault_or_raise(vault_id, db)
        if requester_id not in (vault.member_ids or []):
            check = await self.rbac.check_permission(
                requester_id, Resource.SECURITY_AUDIT, Action.READ,
                PermissionContext(team_id=vault.team_id), db
            )
            if not check.allowed:
                raise PermissionDeniedError("Access denied to vault")

        result = await db.execute(
            select(VaultAccessLog).where(
                and_(
                    VaultAccessLog.vault_id == vault_id,
                    VaultAccessLog.timestamp >= utcnow() - timedelta(hours=hours)
                )
            ).order_by(VaultAccessLog.timestamp.desc()).limit(limit)
        )
        return list(result.scalars().all())


# Global vault service instance
vault_service = TeamVaultService()
