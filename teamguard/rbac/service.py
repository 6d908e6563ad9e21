"""
RBAC Service for TeamGuard

Provides role-based access control: permission checks over hierarchical
resources, role assignment and revocation, and custom role management.
"""

import yaml
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Union
import structlog

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, or_, select, func

from ..audit import record_audit
from ..cache import TTLCache, get_cache
from ..config import PERMISSION_CACHE_TTL_SECONDS, SYSTEM_ROLES_PATH
from ..database import utcnow
from ..exceptions import NotFoundError, PermissionDeniedError, ValidationError
from ..models.api import (
    EffectivePermissions, PermissionCheck, PermissionContext, PermissionSpec,
    RoleCreate, RoleUpdate
)
from ..models.rbac import Action, PermissionEffect, Resource, Role, UserRole
from .matching import conditions_hold, permission_matches

logger = structlog.get_logger(__name__)

# Principal used by internal jobs (seeding, provisioning sync)
SYSTEM_ACTOR = "system"

ADMIN_ROLE = "super_admin"


class RBACService:
    """Core RBAC service for permission management"""

    def __init__(
        self,
        cache: Optional[TTLCache] = None,
        roles_path: Optional[Path] = None,
        cache_ttl_seconds: int = PERMISSION_CACHE_TTL_SECONDS
    ):
        self.cache = cache or get_cache()
        self.roles_path = roles_path or SYSTEM_ROLES_PATH
        self.cache_ttl_seconds = cache_ttl_seconds

    def load_system_roles(self) -> List[Dict[str, Any]]:
        """Load system role definitions from YAML"""
        with open(self.roles_path, 'r') as f:
            config = yaml.safe_load(f) or {}

        roles = []
        for name, data in (config.get("roles") or {}).items():
            roles.append({
                "name": name,
                "description": data.get("description", ""),
                "priority": data.get("priority", 0),
                "permissions": [
                    PermissionSpec.model_validate(p).model_dump(mode="json")
                    for p in data.get("permissions", [])
                ],
            })
        return roles

    async def initialize_roles(self, db: AsyncSession) -> int:
        """Seed system roles when the role collection is empty"""
        try:
            existing = await db.scalar(select(func.count()).select_from(Role))
            if existing:
                return 0

            roles = self.load_system_roles()
            for data in roles:
                db.add(Role(
                    name=data["name"],
                    description=data["description"],
                    permissions=data["permissions"],
                    is_system=True,
                    priority=data["priority"],
                    created_by=SYSTEM_ACTOR,
                ))

            record_audit(
                db, "roles_initialized", "role", None, SYSTEM_ACTOR,
                details={"roles_count": len(roles)}
            )
            await db.commit()
            logger.info("System roles initialized", roles_count=len(roles))
            return len(roles)

        except Exception as e:
            logger.error("Failed to initialize system roles", error=str(e))
            await db.rollback()
            raise

    # ========== PERMISSION CHECKS ==========

    async def check_permission(
        self,
        user_id: str,
        resource: Union[Resource, str],
        action: Union[Action, str],
        context: Optional[PermissionContext] = None,
        db: AsyncSession = None
    ) -> PermissionCheck:
        """Decide whether a user may perform an action; never raises"""
        try:
            resource = Resource(resource)
            action = Action(action)
            context = context or PermissionContext()

            cache_key = f"perm:{user_id}:{resource.value}:{action.value}:{context.cache_key()}"
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return PermissionCheck.model_validate(cached)

            assignments = await self._active_assignments(user_id, context.team_id, db)
            if not assignments:
                result = PermissionCheck(allowed=False, reason="No roles assigned")
            else:
                roles = await self._roles_by_priority([a.role_id for a in assignments], db)
                result = self._resolve(user_id, roles, resource, action, context)

            ttl = self._cache_ttl(assignments)
            await self.cache.set(cache_key, result.model_dump(mode="json"), ttl)
            return result

        except Exception as e:
            logger.error("Permission check failed",
                         user_id=user_id, resource=str(resource), action=str(action), error=str(e))
            return PermissionCheck(allowed=False, reason="Permission check failed")

    def _resolve(
        self,
        user_id: str,
        roles: List[Role],
        resource: Resource,
        action: Action,
        context: PermissionContext
    ) -> PermissionCheck:
        parsed = [(role, [PermissionSpec.model_validate(p) for p in role.permissions or []])
                  for role in roles]

        # Explicit denies override grants from any role, regardless of priority
        for role, permissions in parsed:
            for permission in permissions:
                if permission.effect != PermissionEffect.DENY:
                    continue
                if permission_matches(permission, resource, action) and \
                        conditions_hold(permission.conditions, user_id, context):
                    return PermissionCheck(
                        allowed=False,
                        reason=f"Explicitly denied by role {role.name}",
                        matched_role=role.name,
                        matched_permission=permission,
                    )

        # First matching grant wins, scanning roles by priority
        for role, permissions in parsed:
            for permission in permissions:
                if permission.effect != PermissionEffect.ALLOW:
                    continue
                if permission_matches(permission, resource, action) and \
                        conditions_hold(permission.conditions, user_id, context):
                    return PermissionCheck(
                        allowed=True,
                        matched_role=role.name,
                        matched_permission=permission,
                    )

        return PermissionCheck(allowed=False, reason="No matching permissions")

    def _cache_ttl(self, assignments: List[UserRole]) -> float:
        ttl = float(self.cache_ttl_seconds)
        now = utcnow()
        for assignment in assignments:
            if assignment.expires_at is not None:
                ttl = min(ttl, (assignment.expires_at - now).total_seconds())
        return ttl

    async def require_permission(
        self,
        actor_id: str,
        resource: Union[Resource, str],
        action: Union[Action, str],
        context: Optional[PermissionContext] = None,
        message: Optional[str] = None,
        db: AsyncSession = None
    ) -> PermissionCheck:
        """Raise PermissionDeniedError unless the actor is allowed"""
        if actor_id == SYSTEM_ACTOR:
            return PermissionCheck(allowed=True, reason="System actor")

        check = await self.check_permission(actor_id, resource, action, context, db)
        if not check.allowed:
            raise PermissionDeniedError(
                message or f"Insufficient permissions to {Action(action).value} {Resource(resource).value}",
                {"reason": check.reason},
            )
        return check

    async def _active_assignments(
        self,
        user_id: str,
        team_id: Optional[str],
        db: AsyncSession
    ) -> List[UserRole]:
        conditions = [
            UserRole.user_id == user_id,
            UserRole.is_active == True,
            or_(
                UserRole.expires_at.is_(None),
                UserRole.expires_at > utcnow()
            )
        ]
        if team_id:
            conditions.append(or_(UserRole.team_id.is_(None), UserRole.team_id == team_id))

        result = await db.execute(select(UserRole).where(and_(*conditions)))
        return list(result.scalars().all())

    async def _roles_by_priority(self, role_ids: List[str], db: AsyncSession) -> List[Role]:
        if not role_ids:
            return []
        result = await db.execute(
            select(Role).where(Role.id.in_(set(role_ids))).order_by(Role.priority.desc(), Role.name)
        )
        return list(result.scalars().all())

    async def invalidate_user_cache(self, user_id: str) -> None:
        await self.cache.invalidate_prefix(f"perm:{user_id}:")

    # ========== ROLE ASSIGNMENT ==========

    async def assign_role(
        self,
        user_id: str,
        role_id: str,
        granted_by: str,
        team_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        db: AsyncSession = None
    ) -> str:
        """Assign role to user, returning the assignment id"""
        try:
            await self.require_permission(
                granted_by, Resource.TEAM_ROLES, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to assign roles", db
            )

            role = await db.get(Role, role_id)
            if not role:
                raise NotFoundError("Role not found")

            now = utcnow()
            result = await db.execute(
                select(UserRole).where(
                    and_(
                        UserRole.user_id == user_id,
                        UserRole.role_id == role_id,
                        UserRole.team_id == team_id if team_id else UserRole.team_id.is_(None),
                        UserRole.is_active == True
                    )
                )
            )
            for existing in result.scalars().all():
                if existing.expires_at is None or existing.expires_at > now:
                    raise ValidationError("Role already assigned")
                # Lapsed assignments are retired so only one active row remains
                existing.is_active = False

            assignment = UserRole(
                user_id=user_id,
                role_id=role_id,
                team_id=team_id,
                granted_by=granted_by,
                granted_at=now,
                expires_at=expires_at,
            )
            db.add(assignment)
            await db.flush()

            record_audit(
                db, "role_assigned", "user_role", assignment.id, granted_by,
                affected_user_id=user_id, team_id=team_id,
                details={"role_id": role_id, "role_name": role.name,
                         "expires_at": expires_at.isoformat() if expires_at else None}
            )
            await db.commit()

        except Exception as e:
            logger.error("Role assignment failed",
                         user_id=user_id, role_id=role_id, team_id=team_id, error=str(e))
            await db.rollback()
            raise

        await self.invalidate_user_cache(user_id)
        logger.info("Role assigned", user_id=user_id, role=role.name, team_id=team_id)
        return assignment.id

    async def revoke_role(
        self,
        user_id: str,
        role_id: str,
        revoked_by: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> None:
        """Soft-revoke an active role assignment"""
        try:
            await self.require_permission(
                revoked_by, Resource.TEAM_ROLES, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to revoke roles", db
            )

            result = await db.execute(
                select(UserRole).where(
                    and_(
                        UserRole.user_id == user_id,
                        UserRole.role_id == role_id,
                        UserRole.team_id == team_id if team_id else UserRole.team_id.is_(None),
                        UserRole.is_active == True
                    )
                )
            )
            assignments = list(result.scalars().all())
            if not assignments:
                raise NotFoundError("Role assignment not found")

            now = utcnow()
            for assignment in assignments:
                assignment.is_active = False
                assignment.revoked_by = revoked_by
                assignment.revoked_at = now

            record_audit(
                db, "role_revoked", "user_role", assignments[0].id, revoked_by,
                affected_user_id=user_id, team_id=team_id,
                details={"role_id": role_id}
            )
            await db.commit()

        except Exception as e:
            logger.error("Role revocation failed",
                         user_id=user_id, role_id=role_id, team_id=team_id, error=str(e))
            await db.rollback()
            raise

        await self.invalidate_user_cache(user_id)
        logger.info("Role revoked", user_id=user_id, role_id=role_id, team_id=team_id)

    # ========== ROLE MANAGEMENT ==========

    async def create_role(
        self,
        role: RoleCreate,
        created_by: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> str:
        """Create a custom role"""
        try:
            await self.require_permission(
                created_by, Resource.TEAM_ROLES, Action.CREATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to create roles", db
            )

            if await self._role_name_taken(role.name, db):
                raise ValidationError("Role name already exists")

            new_role = Role(
                name=role.name,
                description=role.description,
                permissions=[p.model_dump(mode="json") for p in role.permissions],
                is_system=False,
                priority=role.priority,
                created_by=created_by,
            )
            db.add(new_role)
            await db.flush()

            record_audit(
                db, "role_created", "role", new_role.id, created_by, team_id=team_id,
                details={"name": role.name, "priority": role.priority}
            )
            await db.commit()

        except Exception as e:
            logger.error("Role creation failed", name=role.name, error=str(e))
            await db.rollback()
            raise

        logger.info("Role created", role_id=new_role.id, name=role.name)
        return new_role.id

    async def update_role(
        self,
        role_id: str,
        updates: RoleUpdate,
        updated_by: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> None:
        """Update a custom role; system roles are immutable"""
        try:
            await self.require_permission(
                updated_by, Resource.TEAM_ROLES, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to update roles", db
            )

            role = await db.get(Role, role_id)
            if not role:
                raise NotFoundError("Role not found")
            if role.is_system:
                raise ValidationError("Cannot modify system roles")

            changes = updates.model_dump(exclude_unset=True, mode="json")
            if "name" in changes and changes["name"] != role.name:
                if await self._role_name_taken(changes["name"], db):
                    raise ValidationError("Role name already exists")
                role.name = changes["name"]
            if "description" in changes:
                role.description = changes["description"]
            if changes.get("permissions") is not None:
                role.permissions = changes["permissions"]
            if changes.get("priority") is not None:
                role.priority = changes["priority"]
            role.updated_at = utcnow()

            holders = await self._role_holders(role_id, db)

            record_audit(
                db, "role_updated", "role", role_id, updated_by, team_id=team_id,
                details={"fields": sorted(changes)}
            )
            await db.commit()

        except Exception as e:
            logger.error("Role update failed", role_id=role_id, error=str(e))
            await db.rollback()
            raise

        for user_id in holders:
            await self.invalidate_user_cache(user_id)
        logger.info("Role updated", role_id=role_id, affected_users=len(holders))

    async def delete_role(
        self,
        role_id: str,
        deleted_by: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> None:
        """Delete a custom role that nobody holds"""
        try:
            await self.require_permission(
                deleted_by, Resource.TEAM_ROLES, Action.DELETE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to delete roles", db
            )

            role = await db.get(Role, role_id)
            if not role:
                raise NotFoundError("Role not found")
            if role.is_system:
                raise ValidationError("Cannot delete system roles")

            if await self._role_holders(role_id, db):
                raise ValidationError("Cannot delete role that is assigned to users")

            await db.delete(role)
            record_audit(
                db, "role_deleted", "role", role_id, deleted_by, team_id=team_id,
                details={"name": role.name}
            )
            await db.commit()

        except Exception as e:
            logger.error("Role deletion failed", role_id=role_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Role deleted", role_id=role_id)

    async def _role_name_taken(self, name: str, db: AsyncSession) -> bool:
        result = await db.execute(select(Role.id).where(Role.name == name))
        return result.first() is not None

    async def _role_holders(self, role_id: str, db: AsyncSession) -> List[str]:
        """Users with an active, unexpired assignment of the role"""
        result = await db.execute(
            select(UserRole.user_id).where(
                and_(
                    UserRole.role_id == role_id,
                    UserRole.is_active == True,
                    or_(
                        UserRole.expires_at.is_(None),
                        UserRole.expires_at > utcnow()
                    )
                )
            ).distinct()
        )
        return list(result.scalars().all())

    # ========== QUERIES ==========

    async def get_roles(self, db: AsyncSession) -> List[Role]:
        result = await db.execute(select(Role).order_by(Role.priority.desc(), Role.name))
        return list(result.scalars().all())

    async def get_role(self, role_id: str, db: AsyncSession) -> Optional[Role]:
        return await db.get(Role, role_id)

    async def get_role_by_name(self, name: str, db: AsyncSession) -> Optional[Role]:
        result = await db.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def get_user_roles(
        self,
        user_id: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> List[UserRole]:
        """Active, unexpired assignments, optionally narrowed to a team"""
        return await self._active_assignments(user_id, team_id, db)

    async def get_user_permissions(
        self,
        user_id: str,
        team_id: Optional[str] = None,
        db: AsyncSession = None
    ) -> EffectivePermissions:
        """Get all effective permissions for a user"""
        cache_key = f"perm:{user_id}:effective:{team_id or '*'}"
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return EffectivePermissions.model_validate(cached)

        assignments = await self._active_assignments(user_id, team_id, db)
        roles = await self._roles_by_priority([a.role_id for a in assignments], db)

        permissions: Dict[str, List[str]] = {}
        for role in roles:
            for raw in role.permissions or []:
                permission = PermissionSpec.model_validate(raw)
                if permission.effect != PermissionEffect.ALLOW:
                    continue
                actions = permissions.setdefault(permission.resource.value, [])
                for action in permission.actions:
                    if action.value not in actions:
                        actions.append(action.value)

        effective = EffectivePermissions(
            user_id=user_id,
            team_id=team_id,
            roles=[role.name for role in roles],
            permissions=permissions,
            is_admin=any(role.name == ADMIN_ROLE for role in roles),
        )
        await self.cache.set(cache_key, effective.model_dump(mode="json"), self._cache_ttl(assignments))
        return effective


# Global RBAC service instance
rbac_service = RBACService()
