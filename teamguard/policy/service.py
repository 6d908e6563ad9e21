"""
Policy Enforcement Service for TeamGuard

Manages per-team security policies, evaluates actions against every enabled
policy, records violations and applies enforcement actions.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import structlog

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, select, update

from ..audit import record_audit
from ..cache import TTLCache, get_cache
from ..collaborators import (
    DatabaseDeviceTrustOracle, DatabaseIdentityProvider, DatabaseSessionProvider,
    DeviceTrustOracle, EnforcementHooks, IdentityProvider, LoggingEnforcementHooks,
    LoggingNotificationDispatcher, NotificationDispatcher, SessionProvider
)
from ..config import POLICY_CACHE_TTL_SECONDS, POLICY_FAIL_OPEN
from ..database import utcnow
from ..exceptions import NotFoundError, ValidationError
from ..models.api import (
    CheckResult, PasswordCheckResult, PermissionContext, PolicyCreate,
    PolicyEvaluation, PolicyResponse, PolicyUpdate, ViolationSummary
)
from ..models.policy import (
    PolicyAction, PolicyMode, PolicyType, PolicyViolation, TeamPolicy, severity_for
)
from ..models.rbac import Action, Resource
from ..rbac.service import RBACService, rbac_service
from .evaluators import (
    EvaluationRequest, EvaluationResult, PolicyEvaluators,
    country_rule_violation, ip_rule_violation, password_errors
)

logger = structlog.get_logger(__name__)


class PolicyEnforcementService:
    """Team policy management and evaluation"""

    def __init__(
        self,
        rbac: Optional[RBACService] = None,
        identity: Optional[IdentityProvider] = None,
        sessions: Optional[SessionProvider] = None,
        devices: Optional[DeviceTrustOracle] = None,
        notifier: Optional[NotificationDispatcher] = None,
        hooks: Optional[EnforcementHooks] = None,
        cache: Optional[TTLCache] = None,
        fail_open: bool = POLICY_FAIL_OPEN,
        cache_ttl_seconds: int = POLICY_CACHE_TTL_SECONDS
    ):
        self.rbac = rbac or rbac_service
        self.identity = identity or DatabaseIdentityProvider()
        self.sessions = sessions or DatabaseSessionProvider()
        self.devices = devices or DatabaseDeviceTrustOracle()
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.hooks = hooks or LoggingEnforcementHooks()
        self.cache = cache or get_cache()
        self.fail_open = fail_open
        self.cache_ttl_seconds = cache_ttl_seconds
        self.evaluators = PolicyEvaluators(self.identity, self.sessions, self.devices)

    # ========== POLICY MANAGEMENT ==========

    async def create_policy(
        self,
        policy: PolicyCreate,
        creator_id: str,
        db: AsyncSession = None
    ) -> str:
        """Create a team policy"""
        try:
            await self.rbac.require_permission(
                creator_id, Resource.SECURITY_POLICIES, Action.CREATE,
                PermissionContext(team_id=policy.team_id),
                "Insufficient permissions to create policies", db
            )

            new_policy = TeamPolicy(
                team_id=policy.team_id,
                name=policy.name,
                description=policy.description,
                type=policy.type.value,
                enabled=policy.enabled,
                config=policy.config.model_dump(mode="json"),
                enforcement=policy.enforcement.model_dump(mode="json"),
                violation_count=0,
                created_by=creator_id,
            )
            db.add(new_policy)
            await db.flush()

            record_audit(
                db, "policy_created", "team_policy", new_policy.id, creator_id,
                team_id=policy.team_id,
                details={"name": policy.name, "type": policy.type.value}
            )
            await db.commit()

        except Exception as e:
            logger.error("Policy creation failed", team_id=policy.team_id, name=policy.name, error=str(e))
            await db.rollback()
            raise

        await self.invalidate_team_cache(policy.team_id)
        logger.info("Policy created", policy_id=new_policy.id, team_id=policy.team_id, type=policy.type.value)
        return new_policy.id

    async def update_policy(
        self,
        policy_id: str,
        updates: PolicyUpdate,
        updater_id: str,
        db: AsyncSession = None
    ) -> None:
        """Update a team policy"""
        try:
            policy = await db.get(TeamPolicy, policy_id)
            if not policy:
                raise NotFoundError("Policy not found")

            await self.rbac.require_permission(
                updater_id, Resource.SECURITY_POLICIES, Action.UPDATE,
                PermissionContext(team_id=policy.team_id),
                "Insufficient permissions to update policies", db
            )

            changes = updates.model_dump(exclude_unset=True, mode="json")
            for field in ("name", "description", "enabled", "config", "enforcement"):
                if field in changes and (changes[field] is not None or field == "description"):
                    setattr(policy, field, changes[field])
            policy.updated_by = updater_id
            policy.updated_at = utcnow()

            record_audit(
                db, "policy_updated", "team_policy", policy_id, updater_id,
                team_id=policy.team_id, details={"fields": sorted(changes)}
            )
            await db.commit()

        except Exception as e:
            logger.error("Policy update failed", policy_id=policy_id, error=str(e))
            await db.rollback()
            raise

        await self.invalidate_team_cache(policy.team_id)
        logger.info("Policy updated", policy_id=policy_id)

    async def get_policy(self, policy_id: str, db: AsyncSession = None) -> Optional[TeamPolicy]:
        return await db.get(TeamPolicy, policy_id)

    async def get_team_policies(
        self,
        team_id: str,
        use_cache: bool = True,
        db: AsyncSession = None
    ) -> List[PolicyResponse]:
        """Enabled policies for a team"""
        cache_key = f"policies:{team_id}"
        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return [PolicyResponse.model_validate(p) for p in cached]

        result = await db.execute(
            select(TeamPolicy).where(
                and_(TeamPolicy.team_id == team_id, TeamPolicy.enabled == True)
            ).order_by(TeamPolicy.created_at, TeamPolicy.id)
        )
        policies = [PolicyResponse.model_validate(p) for p in result.scalars().all()]

        await self.cache.set(
            cache_key, [p.model_dump(mode="json") for p in policies], self.cache_ttl_seconds
        )
        return policies

    async def invalidate_team_cache(self, team_id: str) -> None:
        await self.cache.delete(f"policies:{team_id}")

    # ========== EVALUATION ==========

    async def evaluate_policies(
        self,
        user_id: str,
        team_id: str,
        action: str,
        resource: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        db: AsyncSession = None
    ) -> PolicyEvaluation:
        """Evaluate an action against all enabled team policies; never raises"""
        try:
            policies = await self.get_team_policies(team_id, db=db)
            applicable = await self._applicable_policies(policies, user_id, team_id, db)

            request = EvaluationRequest(
                user_id=user_id,
                team_id=team_id,
                action=action,
                resource=resource,
                context=context or {},
                now=utcnow(),
            )
            results: List[EvaluationResult] = await asyncio.gather(*(
                self.evaluators.evaluate(policy.type, policy.config, request)
                for policy in applicable
            ))

            evaluation = PolicyEvaluation(applied_policies=[p.id for p in applicable])
            user_email = None
            for policy, result in zip(applicable, results):
                evaluation.warnings.extend(result.warnings)
                if result.requires_approval:
                    evaluation.requires_approval = True
                if not result.violated:
                    continue

                if user_email is None:
                    user = await self.identity.get_user(user_id)
                    user_email = user.email if user else ""

                violation = await self._record_violation(
                    policy, user_id, user_email or None, action, resource, result.details, db
                )
                evaluation.violated = True
                evaluation.violations.append(ViolationSummary(
                    id=violation.id,
                    policy_id=policy.id,
                    policy_name=policy.name,
                    policy_type=policy.type,
                    severity=violation.severity,
                    details=result.details,
                ))
                await self._enforce(policy, user_id, team_id, violation, evaluation)

            if evaluation.violated:
                await self.invalidate_team_cache(team_id)
            return evaluation

        except Exception as e:
            logger.error("Policy evaluation failed",
                         user_id=user_id, team_id=team_id, action=action, error=str(e))
            if db is not None:
                try:
                    await db.rollback()
                except Exception as rollback_error:
                    logger.error("Rollback after policy evaluation failure failed",
                                 team_id=team_id, error=str(rollback_error))
            if self.fail_open:
                return PolicyEvaluation(allowed=True)
            return PolicyEvaluation(allowed=False, warnings=["Policy evaluation failed"])

    async def _applicable_policies(
        self,
        policies: List[PolicyResponse],
        user_id: str,
        team_id: str,
        db: AsyncSession
    ) -> List[PolicyResponse]:
        applicable = []
        user_roles = None
        for policy in policies:
            enforcement = policy.enforcement
            if user_id in enforcement.exempt_users:
                continue
            if enforcement.exempt_roles:
                if user_roles is None:
                    effective = await self.rbac.get_user_permissions(user_id, team_id, db)
                    user_roles = set(effective.roles)
                if user_roles & set(enforcement.exempt_roles):
                    continue
            applicable.append(policy)
        return applicable

    async def _record_violation(
        self,
        policy: PolicyResponse,
        user_id: str,
        user_email: Optional[str],
        action: str,
        resource: Optional[str],
        details: Dict[str, Any],
        db: AsyncSession
    ) -> PolicyViolation:
        now = utcnow()
        violation = PolicyViolation(
            team_id=policy.team_id,
            policy_id=policy.id,
            policy_name=policy.name,
            policy_type=policy.type.value,
            user_id=user_id,
            user_email=user_email,
            timestamp=now,
            action=action,
            resource=resource,
            details=details,
            severity=severity_for(policy.type).value,
        )
        db.add(violation)
        await db.execute(
            update(TeamPolicy)
            .where(TeamPolicy.id == policy.id)
            .values(violation_count=TeamPolicy.violation_count + 1, last_enforced_at=now)
        )
        await db.commit()

        logger.warning("Policy violation recorded",
                       policy_id=policy.id, policy_type=policy.type.value,
                       user_id=user_id, action=action, severity=violation.severity)
        return violation

    async def _enforce(
        self,
        policy: PolicyResponse,
        user_id: str,
        team_id: str,
        violation: PolicyViolation,
        evaluation: PolicyEvaluation
    ) -> None:
        enforcement = policy.enforcement

        if enforcement.mode == PolicyMode.WARN:
            evaluation.warnings.append(f"Policy violation: {policy.name}")
        elif enforcement.mode == PolicyMode.ENFORCE and enforcement.block_on_violation:
            evaluation.allowed = False

        for action in enforcement.actions:
            try:
                await self._execute_action(action, policy, user_id, team_id, violation, evaluation)
            except Exception as e:
                logger.error("Enforcement action failed",
                             policy_id=policy.id, action=action.value, user_id=user_id, error=str(e))

        if enforcement.notify_on_violation and PolicyAction.NOTIFY_ADMIN not in enforcement.actions:
            await self.notifier.notify_admins(
                team_id, "Policy Violation Alert",
                f"User {user_id} violated the {policy.name} policy"
            )

    async def _execute_action(
        self,
        action: PolicyAction,
        policy: PolicyResponse,
        user_id: str,
        team_id: str,
        violation: PolicyViolation,
        evaluation: PolicyEvaluation
    ) -> None:
        if action == PolicyAction.BLOCK_ACTION:
            evaluation.allowed = False
        elif action == PolicyAction.REQUIRE_APPROVAL:
            evaluation.requires_approval = True
        elif action == PolicyAction.NOTIFY_USER:
            await self.notifier.notify_user(
                user_id, "Policy Violation",
                f"Your action violated the {policy.name} policy"
            )
        elif action == PolicyAction.NOTIFY_ADMIN:
            await self.notifier.notify_admins(
                team_id, "Policy Violation Alert",
                f"User {user_id} violated the {policy.name} policy"
            )
        elif action == PolicyAction.FORCE_LOGOUT:
            await self.sessions.invalidate_user_sessions(user_id)
        elif action == PolicyAction.DISABLE_ACCOUNT:
            await self.hooks.disable_account(user_id, policy.model_dump(mode="json"))
        elif action == PolicyAction.CUSTOM_WEBHOOK:
            await self.hooks.dispatch_webhook(
                policy.model_dump(mode="json"),
                {"id": violation.id, "user_id": user_id, "action": violation.action,
                 "severity": violation.severity, "details": violation.details}
            )
        elif action == PolicyAction.LOG:
            logger.info("Policy enforcement logged",
                        policy_id=policy.id, user_id=user_id, violation_id=violation.id)

    # ========== VIOLATIONS ==========

    async def get_policy_violations(
        self,
        team_id: str,
        days: int = 30,
        resolved: Optional[bool] = None,
        db: AsyncSession = None
    ) -> List[PolicyViolation]:
        conditions = [
            PolicyViolation.team_id == team_id,
            PolicyViolation.timestamp >= utcnow() - timedelta(days=days),
        ]
        if resolved is not None:
            conditions.append(PolicyViolation.resolved == resolved)

        result = await db.execute(
            select(PolicyViolation).where(and_(*conditions)).order_by(PolicyViolation.timestamp.desc())
        )
        return list(result.scalars().all())

    async def resolve_violation(
        self,
        violation_id: str,
        resolved_by: str,
        resolution: str,
        db: AsyncSession = None
    ) -> None:
        """Close a violation with a resolution note"""
        try:
            violation = await db.get(PolicyViolation, violation_id)
            if not violation:
                raise NotFoundError("Violation not found")
            if violation.resolved:
                raise ValidationError("Violation already resolved")

            await self.rbac.require_permission(
                resolved_by, Resource.SECURITY_POLICIES, Action.UPDATE,
                PermissionContext(team_id=violation.team_id),
                "Insufficient permissions to resolve violations", db
            )

            violation.resolved = True
            violation.resolved_by = resolved_by
            violation.resolved_at = utcnow()
            violation.resolution = resolution

            record_audit(
                db, "violation_resolved", "policy_violation", violation_id, resolved_by,
                affected_user_id=violation.user_id, team_id=violation.team_id,
                details={"policy_id": violation.policy_id}
            )
            await db.commit()

        except Exception as e:
            logger.error("Violation resolution failed", violation_id=violation_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Violation resolved", violation_id=violation_id, resolved_by=resolved_by)

    # ========== FAST-PATH CHECKS ==========

    async def _policies_of_type(
        self,
        team_id: str,
        policy_types: Tuple[PolicyType, ...],
        db: AsyncSession
    ) -> List[PolicyResponse]:
        policies = await self.get_team_policies(team_id, db=db)
        return [p for p in policies if p.type in policy_types]

    async def check_password_policy(
        self,
        team_id: str,
        password: str,
        db: AsyncSession = None
    ) -> PasswordCheckResult:
        """Validate a password against the team's complexity rules"""
        try:
            errors: List[str] = []
            for policy in await self._policies_of_type(team_id, (PolicyType.PASSWORD_COMPLEXITY,), db):
                for error in password_errors(policy.config, password):
                    if error not in errors:
                        errors.append(error)
            return PasswordCheckResult(valid=not errors, errors=errors)

        except Exception as e:
            logger.error("Failed to check password policy", team_id=team_id, error=str(e))
            if self.fail_open:
                return PasswordCheckResult(valid=True)
            return PasswordCheckResult(valid=False, errors=["Password policy check failed"])

    async def check_session_policy(
        self,
        team_id: str,
        user_id: str,
        db: AsyncSession = None
    ) -> CheckResult:
        """Decide whether the user may open another session"""
        try:
            policies = await self._policies_of_type(team_id, (PolicyType.SESSION_TIMEOUT,), db)
            sessions = None
            for policy in policies:
                if user_id in policy.enforcement.exempt_users:
                    continue
                limit = policy.config.max_concurrent_sessions
                if not limit:
                    continue
                if sessions is None:
                    sessions = await self.sessions.get_active_sessions(user_id)
                if len(sessions) >= limit:
                    return CheckResult(
                        allowed=False,
                        reason=f"Maximum concurrent sessions ({limit}) exceeded"
                    )
            return CheckResult(allowed=True)

        except Exception as e:
            logger.error("Failed to check session policy", team_id=team_id, user_id=user_id, error=str(e))
            if self.fail_open:
                return CheckResult(allowed=True)
            return CheckResult(allowed=False, reason="Session policy check failed")

    async def check_ip_policy(
        self,
        team_id: str,
        ip_address: str,
        country: Optional[str] = None,
        db: AsyncSession = None
    ) -> CheckResult:
        """Check an address (and optional country) against the team's network rules"""
        try:
            policies = await self._policies_of_type(
                team_id, (PolicyType.IP_RESTRICTION, PolicyType.GEOLOCATION), db
            )
            for policy in policies:
                reason = ip_rule_violation(policy.config, ip_address)
                if reason is None:
                    reason = country_rule_violation(policy.config, country)
                if reason:
                    return CheckResult(allowed=False, reason=reason)
            return CheckResult(allowed=True)

        except Exception as e:
            logger.error("Failed to check IP policy", team_id=team_id, ip_address=ip_address, error=str(e))
            if self.fail_open:
                return CheckResult(allowed=True)
            return CheckResult(allowed=False, reason="IP policy check failed")


# Global policy service instance
policy_service = PolicyEnforcementService()
