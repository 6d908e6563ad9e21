"""
Provisioning Service for TeamGuard

SCIM-style user and group provisioning for identity-provider integrations.
Requests authenticate with team API keys (stored as SHA-256 hashes only).
Every SCIM operation lands in the provisioning log whether it succeeds or
fails, and batch syncs keep one mutable SyncStatus row per team.
"""

import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set
import structlog

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, select

from ..audit import record_audit
from ..collaborators import DatabaseUserDirectory, IdentitySource, UserDirectory
from ..config import API_KEY_PREFIX
from ..database import utcnow
from ..exceptions import NotFoundError, ProvisioningAuthError, ValidationError
from ..models.api import (
    DEFAULT_API_KEY_PERMISSIONS, IdentityRecord, IssuedApiKey, PermissionContext,
    ProvisioningConfigCreate, ProvisioningConfigUpdate, SCIMEmail, SCIMGroup,
    SCIMGroupExtension, SCIMUser, SCIMUserExtension, SCIMUserPatch, SyncConfig,
    SyncStatusResponse, VaultCreate, VaultSettings
)
from ..models.provisioning import (
    ProvisioningApiKey, ProvisioningConfig, ProvisioningLog, ProvisioningOperation,
    ProvisioningResource, SyncState, SyncStatus, empty_sync_stats
)
from ..models.rbac import Action, Resource
from ..models.users import User
from ..models.vault import TeamVault
from ..policy.evaluators import ip_in_list
from ..rbac.service import RBACService, SYSTEM_ACTOR, rbac_service
from ..vault.service import TeamVaultService, vault_service

logger = structlog.get_logger(__name__)

WILDCARD_PERMISSION = "*"


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_urlsafe(32)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class ProvisioningService:
    """API keys, SCIM users and groups, and identity-source sync"""

    def __init__(
        self,
        rbac: Optional[RBACService] = None,
        vaults: Optional[TeamVaultService] = None,
        directory: Optional[UserDirectory] = None
    ):
        self.rbac = rbac or rbac_service
        self.vaults = vaults or vault_service
        self.directory = directory or DatabaseUserDirectory()

    # ========== CONFIGURATION ==========

    async def get_config(self, team_id: str, db: AsyncSession = None) -> Optional[ProvisioningConfig]:
        result = await db.execute(
            select(ProvisioningConfig).where(ProvisioningConfig.team_id == team_id)
        )
        return result.scalar_one_or_none()

    async def _config_or_raise(self, team_id: str, db: AsyncSession) -> ProvisioningConfig:
        config = await self.get_config(team_id, db)
        if not config:
            raise NotFoundError("Provisioning not configured for this team")
        return config

    async def initialize_provisioning(
        self,
        team_id: str,
        config: ProvisioningConfigCreate,
        created_by: str,
        db: AsyncSession = None
    ) -> IssuedApiKey:
        """Enable provisioning for a team and issue its initial wildcard key"""
        try:
            await self.rbac.require_permission(
                created_by, Resource.ADMIN_SETTINGS, Action.CREATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to configure provisioning", db
            )

            if await self.get_config(team_id, db):
                raise ValidationError("Provisioning already configured for this team")

            db.add(ProvisioningConfig(
                team_id=team_id,
                enabled=config.enabled,
                type=config.type.value,
                sync_config=config.sync_config.model_dump(mode="json"),
                created_by=created_by,
            ))
            issued = await self._issue_key(
                team_id, "Initial API Key", [WILDCARD_PERMISSION], created_by, None, [], db
            )

            if not await db.get(SyncStatus, team_id):
                db.add(SyncStatus(team_id=team_id, status=SyncState.IDLE.value, stats=empty_sync_stats()))

            record_audit(
                db, "provisioning_initialized", "provisioning_config", team_id, created_by,
                team_id=team_id,
                details={"type": config.type.value, "enabled": config.enabled}
            )
            await db.commit()

        except Exception as e:
            logger.error("Failed to initialize provisioning", team_id=team_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Provisioning initialized", team_id=team_id, type=config.type.value)
        return issued

    async def update_provisioning_config(
        self,
        team_id: str,
        updates: ProvisioningConfigUpdate,
        updated_by: str,
        db: AsyncSession = None
    ) -> ProvisioningConfig:
        try:
            await self.rbac.require_permission(
                updated_by, Resource.ADMIN_SETTINGS, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to update provisioning", db
            )
            config = await self._config_or_raise(team_id, db)

            changes = updates.model_dump(exclude_unset=True, mode="json")
            if updates.enabled is not None:
                config.enabled = updates.enabled
            if updates.sync_config is not None:
                config.sync_config = updates.sync_config.model_dump(mode="json")
            config.updated_at = utcnow()

            record_audit(
                db, "provisioning_updated", "provisioning_config", config.id, updated_by,
                team_id=team_id, details={"updates": sorted(changes)}
            )
            await db.commit()

        except Exception as e:
            logger.error("Failed to update provisioning config", team_id=team_id, error=str(e))
            await db.rollback()
            raise

        logger.info("Provisioning config updated", team_id=team_id)
        return config

    # ========== API KEYS ==========

    async def _issue_key(
        self,
        team_id: str,
        name: str,
        permissions: List[str],
        created_by: str,
        expires_in_days: Optional[int],
        ip_restrictions: List[str],
        db: AsyncSession
    ) -> IssuedApiKey:
        raw_key = generate_api_key()
        expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None

        api_key = ProvisioningApiKey(
            team_id=team_id,
            name=name,
            key_prefix=raw_key[:len(API_KEY_PREFIX) + 6],
            key_hash=hash_api_key(raw_key),
            permissions=list(permissions),
            ip_restrictions=list(ip_restrictions),
            created_by=created_by,
            expires_at=expires_at,
        )
        db.add(api_key)
        await db.flush()

        return IssuedApiKey(
            key_id=api_key.id,
            api_key=raw_key,
            key_prefix=api_key.key_prefix,
            permissions=api_key.permissions,
            expires_at=expires_at,
        )

    async def add_api_key(
        self,
        team_id: str,
        name: str,
        permissions: Optional[List[str]] = None,
        created_by: str = None,
        expires_in_days: Optional[int] = None,
        ip_restrictions: Optional[List[str]] = None,
        db: AsyncSession = None
    ) -> IssuedApiKey:
        """Issue a new key; the raw value is only returned here"""
        try:
            await self.rbac.require_permission(
                created_by, Resource.ADMIN_SETTINGS, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to manage API keys", db
            )
            await self._config_or_raise(team_id, db)

            issued = await self._issue_key(
                team_id, name,
                permissions if permissions is not None else DEFAULT_API_KEY_PERMISSIONS,
                created_by, expires_in_days, ip_restrictions or [], db
            )
            record_audit(
                db, "api_key_created", "provisioning_api_key", issued.key_id, created_by,
                team_id=team_id, details={"key_name": name, "permissions": issued.permissions}
            )
            await db.commit()

        except Exception as e:
            logger.error("Failed to add API key", team_id=team_id, name=name, error=str(e))
            await db.rollback()
            raise

        logger.info("API key created", team_id=team_id, key_id=issued.key_id)
        return issued

    async def revoke_api_key(
        self,
        team_id: str,
        key_id: str,
        revoked_by: str,
        db: AsyncSession = None
    ) -> None:
        try:
            await self.rbac.require_permission(
                revoked_by, Resource.ADMIN_SETTINGS, Action.UPDATE,
                PermissionContext(team_id=team_id),
                "Insufficient permissions to revoke API key", db
            )
            await self._config_or_raise(team_id, db)

            api_key = await db.get(ProvisioningApiKey, key_id)
            if not api_key or api_key.team_id != team_id:
                raise NotFoundError("API key not found")

            api_key.active = False
            api_key.revoked_by = revoked_by
            api_key.revoked_at = utcnow()

            record_audit(
                db, "api_key_revoked", "provisioning_api_key", key_id, revoked_by,
                team_id=team_id, details={"key_name": api_key.name}
            )
            await db.commit()

        except Exception as e:
            logger.error("Failed to revoke API key", team_id=team_id, key_id=key_id, error=str(e))
            await db.rollback()
            raise

        logger.info("API key revoked", team_id=team_id, key_id=key_id)

    async def get_api_keys(self, team_id: str, db: AsyncSession = None) -> List[ProvisioningApiKey]:
        result = await db.execute(
            select(ProvisioningApiKey)
            .where(ProvisioningApiKey.team_id == team_id)
            .order_by(ProvisioningApiKey.created_at)
        )
        return list(result.scalars().all())

    async def authenticate_api_key(
        self,
        team_id: str,
        raw_key: str,
        required_permission: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> ProvisioningApiKey:
        """Resolve a raw key to its record, enforcing state, expiry, IP and scope"""
        config = await self.get_config(team_id, db)
        if not config:
            raise ProvisioningAuthError("Provisioning not configured")
        if not config.enabled:
            raise ProvisioningAuthError("Provisioning not enabled for this team")

        result = await db.execute(
            select(ProvisioningApiKey).where(
                and_(
                    ProvisioningApiKey.team_id == team_id,
                    ProvisioningApiKey.key_hash == hash_api_key(raw_key or "")
                )
            )
        )
        api_key = result.scalar_one_or_none()
        if not api_key or not api_key.active:
            logger.warning("Rejected provisioning API key", team_id=team_id, reason="invalid")
            raise ProvisioningAuthError("Invalid or inactive API key")

        now = utcnow()
        if api_key.expires_at and api_key.expires_at <= now:
            logger.warning("Rejected provisioning API key", team_id=team_id, key_id=api_key.id, reason="expired")
            raise ProvisioningAuthError("API key expired")

        if api_key.ip_restrictions and (not ip_address or not ip_in_list(ip_address, api_key.ip_restrictions)):
            logger.warning("Rejected provisioning API key",
                           team_id=team_id, key_id=api_key.id, reason="ip", ip_address=ip_address)
            raise ProvisioningAuthError("IP address not allowed for this API key")

        permissions = api_key.permissions or []
        if WILDCARD_PERMISSION not in permissions and required_permission not in permissions:
            logger.warning("Rejected provisioning API key",
                           team_id=team_id, key_id=api_key.id, reason="scope", required=required_permission)
            raise ProvisioningAuthError("Insufficient API key permissions")

        api_key.last_used_at = now
        await db.commit()
        return api_key

    # ========== LOGGING ==========

    def _log_operation(
        self,
        db: AsyncSession,
        team_id: str,
        operation: ProvisioningOperation,
        resource_type: ProvisioningResource,
        status: str,
        resource_id: Optional[str] = None,
        external_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> None:
        db.add(ProvisioningLog(
            team_id=team_id,
            timestamp=utcnow(),
            operation=operation.value,
            resource_type=resource_type.value,
            resource_id=resource_id,
            external_id=external_id,
            status=status,
            details=details or {},
            error=error[:1000] if error else None,
        ))

    async def _record_failure(
        self,
        db: AsyncSession,
        team_id: str,
        operation: ProvisioningOperation,
        resource_type: ProvisioningResource,
        error: Exception,
        resource_id: Optional[str] = None,
        external_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Persist a failed-operation log entry after the failed work was rolled back"""
        await db.rollback()
        self._log_operation(
            db, team_id, operation, resource_type, "failed",
            resource_id=resource_id, external_id=external_id,
            details=details, error=str(error)
        )
        await db.commit()

    # ========== SCIM USERS ==========

    async def _team_user(self, team_id: str, user_id: str, db: AsyncSession) -> User:
        user = await self.directory.get_user(user_id, db)
        if not user or user.team_id != team_id:
            raise NotFoundError("User not found")
        return user

    async def _team_role_ids(self, team_id: str, user_id: str, db: AsyncSession) -> List[str]:
        assignments = await self.rbac.get_user_roles(user_id, team_id, db)
        return [a.role_id for a in assignments if a.team_id == team_id]

    async def _member_vault_ids(self, team_id: str, user_id: str, db: AsyncSession) -> List[str]:
        result = await db.execute(select(TeamVault).where(TeamVault.team_id == team_id))
        return [v.id for v in result.scalars().all() if user_id in (v.member_ids or [])]

    async def _to_scim_user(self, user: User, db: AsyncSession) -> SCIMUser:
        role_ids = await self._team_role_ids(user.team_id, user.id, db)
        return SCIMUser(
            id=user.id,
            external_id=user.external_id,
            user_name=user.email,
            display_name=user.display_name,
            emails=[SCIMEmail(value=user.email)],
            active=user.is_active,
            enterprise=SCIMUserExtension(
                team_id=user.team_id,
                role_id=role_ids[0] if role_ids else None,
                vault_ids=await self._member_vault_ids(user.team_id, user.id, db),
            ),
        )

    async def _check_grants(
        self,
        team_id: str,
        role_id: Optional[str],
        vault_ids: List[str],
        db: AsyncSession,
        user_id: Optional[str] = None
    ) -> None:
        """Reject an unknown role or a vault the user cannot join before anything is written"""
        if role_id and not await self.rbac.get_role(role_id, db):
            raise NotFoundError("Role not found")
        for vault_id in vault_ids:
            vault = await self.vaults.get_vault(vault_id, db)
            if not vault or vault.team_id != team_id:
                raise NotFoundError("Vault not found")
            if user_id and user_id in (vault.member_ids or []):
                continue
            if not VaultSettings.model_validate(vault.settings or {}).allow_sharing:
                raise ValidationError("Sharing is disabled for this vault")

    async def _set_team_role(self, team_id: str, user_id: str, role_id: str, db: AsyncSession) -> bool:
        """Make ``role_id`` the user's only team-scoped role; False when already so"""
        current = await self._team_role_ids(team_id, user_id, db)
        if current == [role_id]:
            return False
        if role_id not in current:
            await self.rbac.assign_role(user_id, role_id, SYSTEM_ACTOR, team_id, db=db)
        for existing in current:
            if existing != role_id:
                await self.rbac.revoke_role(user_id, existing, SYSTEM_ACTOR, team_id, db=db)
        return True

    async def _join_vaults(self, user_id: str, vault_ids: List[str], db: AsyncSession) -> None:
        for vault_id in vault_ids:
            vault = await self.vaults.get_vault(vault_id, db)
            if vault and user_id in (vault.member_ids or []):
                continue
            await self.vaults.add_member_to_vault(vault_id, user_id, SYSTEM_ACTOR, db=db)

    async def _deprovision(self, team_id: str, user_id: str, db: AsyncSession) -> None:
        """Strip team roles and vault memberships from a departed user"""
        for role_id in await self._team_role_ids(team_id, user_id, db):
            await self.rbac.revoke_role(user_id, role_id, SYSTEM_ACTOR, team_id, db=db)

        result = await db.execute(select(TeamVault).where(TeamVault.team_id == team_id))
        for vault in result.scalars().all():
            if user_id in (vault.member_ids or []) and vault.created_by != user_id:
                await self.vaults.remove_member_from_vault(vault.id, user_id, SYSTEM_ACTOR, db=db)

    async def create_scim_user(
        self,
        team_id: str,
        user: SCIMUser,
        api_key: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> SCIMUser:
        email = user.primary_email
        try:
            await self.authenticate_api_key(team_id, api_key, "users:create", ip_address, db)

            if user.external_id and await self.directory.find_by_external_id(team_id, user.external_id, db):
                raise ValidationError("User with this externalId already exists")
            if await db.scalar(select(User.id).where(User.email == email)):
                raise ValidationError("User with this email already exists")

            extension = user.enterprise
            if extension:
                await self._check_grants(team_id, extension.role_id, extension.vault_ids or [], db)

            display_name = user.display_name
            if not display_name and user.name:
                display_name = " ".join(p for p in (user.name.given_name, user.name.family_name) if p) or None

            user_id = await self.directory.create_user(
                IdentityRecord(
                    external_id=user.external_id or user.user_name,
                    email=email,
                    display_name=display_name,
                    active=user.active,
                ),
                team_id, db
            )
            await db.commit()

            if extension and extension.role_id:
                await self.rbac.assign_role(user_id, extension.role_id, SYSTEM_ACTOR, team_id, db=db)
            if extension and extension.vault_ids:
                await self._join_vaults(user_id, extension.vault_ids, db)

            self._log_operation(
                db, team_id, ProvisioningOperation.CREATE, ProvisioningResource.USER, "success",
                resource_id=user_id, external_id=user.external_id, details={"email": email}
            )
            await db.commit()
            created = await self._to_scim_user(await self._team_user(team_id, user_id, db), db)

        except Exception as e:
            logger.error("SCIM user creation failed", team_id=team_id, email=email, error=str(e))
            await self._record_failure(
                db, team_id, ProvisioningOperation.CREATE, ProvisioningResource.USER, e,
                external_id=user.external_id, details={"email": email}
            )
            raise

        logger.info("SCIM user created", team_id=team_id, user_id=user_id)
        return created

    async def get_scim_user(
        self,
        team_id: str,
        user_id: str,
        api_key: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> SCIMUser:
        try:
            await self.authenticate_api_key(team_id, api_key, "users:read", ip_address, db)
            scim_user = await self._to_scim_user(await self._team_user(team_id, user_id, db), db)

            self._log_operation(
                db, team_id, ProvisioningOperation.READ, ProvisioningResource.USER, "success",
                resource_id=user_id, external_id=scim_user.external_id
            )
            await db.commit()

        except Exception as e:
            logger.error("SCIM user lookup failed", team_id=team_id, user_id=user_id, error=str(e))
            await self._record_failure(
                db, team_id, ProvisioningOperation.READ, ProvisioningResource.USER, e, resource_id=user_id
            )
            raise

        return scim_user

    async def update_scim_user(
        self,
        team_id: str,
        user_id: str,
        updates: SCIMUserPatch,
        api_key: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> SCIMUser:
        """Apply a partial update; a role in the extension replaces the user's team roles"""
        try:
            await self.authenticate_api_key(team_id, api_key, "users:update", ip_address, db)
            await self._team_user(team_id, user_id, db)

            extension = updates.enterprise
            if extension:
                await self._check_grants(team_id, extension.role_id, extension.vault_ids or [], db, user_id)

            changes: Dict[str, Any] = {}
            if updates.display_name is not None:
                changes["display_name"] = updates.display_name
            if updates.active is not None:
                changes["is_active"] = updates.active
            if updates.emails:
                primary = next((e for e in updates.emails if e.primary), updates.emails[0])
                changes["email"] = primary.value
            if changes:
                await self.directory.update_user(user_id, changes, db)
                await db.commit()

            if extension and extension.role_id:
                await self._set_team_role(team_id, user_id, extension.role_id, db)
            if extension and extension.vault_ids:
                await self._join_vaults(user_id, extension.vault_ids, db)

            self._log_operation(
                db, team_id, ProvisioningOperation.UPDATE, ProvisioningResource.USER, "success",
                resource_id=user_id,
                details={"updates": sorted(updates.model_dump(exclude_unset=True))}
            )
            await db.commit()
            updated = await self._to_scim_user(await self._team_user(team_id, user_id, db), db)

        except Exception as e:
            logger.error("SCIM user update failed", team_id=team_id, user_id=user_id, error=str(e))
            await self._record_failure(
                db, team_id, ProvisioningOperation.UPDATE, ProvisioningResource.USER, e, resource_id=user_id
            )
            raise

        logger.info("SCIM user updated", team_id=team_id, user_id=user_id)
        return updated

    async def delete_scim_user(
        self,
        team_id: str,
        user_id: str,
        api_key: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> None:
        """Disable the user; with auto-deprovisioning also strip roles and vaults"""
        try:
            await self.authenticate_api_key(team_id, api_key, "users:delete", ip_address, db)
            await self._team_user(team_id, user_id, db)
            config = await self._config_or_raise(team_id, db)

            await self.directory.update_user(user_id, {"is_active": False}, db)
            await db.commit()

            deprovisioned = SyncConfig.model_validate(config.sync_config or {}).auto_deprovision
            if deprovisioned:
                await self._deprovision(team_id, user_id, db)

            self._log_operation(
                db, team_id, ProvisioningOperation.DELETE, ProvisioningResource.USER, "success",
                resource_id=user_id, details={"deprovisioned": deprovisioned}
            )
            await db.commit()

        except Exception as e:
            logger.error("SCIM user deletion failed", team_id=team_id, user_id=user_id, error=str(e))
            await self._record_failure(
                db, team_id, ProvisioningOperation.DELETE, ProvisioningResource.USER, e, resource_id=user_id
            )
            raise

        logger.info("SCIM user disabled", team_id=team_id, user_id=user_id)

    # ========== SCIM GROUPS ==========

    async def create_scim_group(
        self,
        team_id: str,
        group: SCIMGroup,
        api_key: str,
        ip_address: Optional[str] = None,
        db: AsyncSession = None
    ) -> SCIMGroup:
        """Groups are represented as vaults owned by the system actor"""
        try:
            await self.authenticate_api_key(team_id, api_key, "groups:create", ip_address, db)

            vault_id = await self.vaults.create_vault(
                VaultCreate(team_id=team_id, name=group.display_name), SYSTEM_ACTOR, db=db
            )
            await self._join_members(vault_id, [m.value for m in group.members], db)

            self._log_operation(
                db, team_id, ProvisioningOperation.CREATE, ProvisioningResource.GROUP, "success",
                resource_id=vault_id, external_id=group.external_id,
                details={"display_name": group.display_name, "member_count": len(group.members)}
            )
            await db.commit()

        except Exception as e:
            logger.error("SCIM group creation failed", team_id=team_id, name=group.display_name, error=str(e))
            await self._record_failure(
                db, team_id, ProvisioningOperation.CREATE, ProvisioningResource.GROUP, e,
                external_id=group.external_id, details={"display_name": group.display_name}
            )
            raise

        logger.info("SCIM group created", team_id=team_id, vault_id=vault_id)
        return SCIMGroup(
            id=vault_id,
            external_id=group.external_id,
            display_name=group.display_name,
            members=group.members,
            enterprise=SCIMGroupExtension(team_id=team_id, vault_id=vault_id),
        )

    async def _join_members(self, vault_id: str, member_ids: List[str], db: AsyncSession) -> None:
        for member_id in member_ids:
            await self._join_vaults(member_id, [vault_id], db)

    # ========== SYNC ==========

    async def _sync_status(self, team_id: str, db: AsyncSession) -> SyncStatus:
        status = await db.get(SyncStatus, team_id, populate_existing=True)
        if not status:
            status = SyncStatus(team_id=team_id, status=SyncState.IDLE.value, stats=empty_sync_stats())
            db.add(status)
            await db.flush()
        return status

    async def _apply_record(
        self,
        team_id: str,
        record: IdentityRecord,
        sync_config: SyncConfig,
        db: AsyncSession
    ) -> Optional[bool]:
        """Create or update one user; True when created, None when skipped"""
        user = await self.directory.find_by_external_id(team_id, record.external_id, db)
        created = user is None
        if created and not sync_config.auto_provision:
            return None

        role_id = record.role_id or sync_config.default_role_id
        vault_ids = record.vault_ids if record.vault_ids is not None else sync_config.default_vault_ids
        await self._check_grants(team_id, role_id, vault_ids, db, None if created else user.id)

        if created:
            user_id = await self.directory.create_user(record, team_id, db)
        else:
            user_id = user.id
            changes = {}
            if user.email != record.email:
                changes["email"] = record.email
            if record.display_name is not None and user.display_name != record.display_name:
                changes["display_name"] = record.display_name
            if user.is_active != record.active:
                changes["is_active"] = record.active
            if changes:
                await self.directory.update_user(user_id, changes, db)

        self._log_operation(
            db, team_id,
            ProvisioningOperation.CREATE if created else ProvisioningOperation.UPDATE,
            ProvisioningResource.USER, "success",
            resource_id=user_id, external_id=record.external_id, details={"source": "sync"}
        )
        await db.commit()

        if role_id:
            await self._set_team_role(team_id, user_id, role_id, db)
        await self._join_vaults(user_id, vault_ids, db)
        return created

    def _sync_error(self, operation: str, error: Exception, resource_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "timestamp": utcnow().isoformat(),
            "operation": operation,
            "error": str(error),
            "resource_id": resource_id,
        }

    async def sync_users(
        self,
        team_id: str,
        source: IdentitySource,
        db: AsyncSession = None
    ) -> SyncStatusResponse:
        """
        Pull users from an identity source and reconcile them with the team

        Per-record failures are counted and recorded without stopping the run;
        anything else marks the run failed and is re-raised.
        """
        config = await self.get_config(team_id, db)
        if not config or not config.enabled:
            raise ValidationError("Provisioning not enabled for this team")
        sync_config = SyncConfig.model_validate(config.sync_config or {})

        status = await self._sync_status(team_id, db)
        status.status = SyncState.SYNCING.value
        await db.commit()
        logger.info("Provisioning sync started", team_id=team_id)

        stats = empty_sync_stats()
        errors: List[Dict[str, Any]] = []
        try:
            records = await source.fetch_users(team_id)
            seen: Set[str] = set()

            for record in records:
                seen.add(record.external_id)
                try:
                    created = await self._apply_record(team_id, record, sync_config, db)
                except Exception as e:
                    logger.error("Sync record failed", team_id=team_id, external_id=record.external_id, error=str(e))
                    stats["errors"] += 1
                    errors.append(self._sync_error("sync", e, record.external_id))
                    await self._record_failure(
                        db, team_id, ProvisioningOperation.SYNC, ProvisioningResource.USER, e,
                        external_id=record.external_id
                    )
                    continue
                if created is True:
                    stats["users_created"] += 1
                elif created is False:
                    stats["users_updated"] += 1

            if sync_config.auto_deprovision:
                departed = [
                    (user.id, user.external_id)
                    for user in await self.directory.list_team_users(team_id, db)
                    if user.is_active and user.external_id and user.external_id not in seen
                ]
                for user_id, external_id in departed:
                    try:
                        await self.directory.update_user(user_id, {"is_active": False}, db)
                        await db.commit()
                        await self._deprovision(team_id, user_id, db)
                        self._log_operation(
                            db, team_id, ProvisioningOperation.DELETE, ProvisioningResource.USER, "success",
                            resource_id=user_id, external_id=external_id, details={"source": "sync"}
                        )
                        await db.commit()
                        stats["users_deleted"] += 1
                    except Exception as e:
                        logger.error("Sync deprovision failed", team_id=team_id, user_id=user_id, error=str(e))
                        stats["errors"] += 1
                        errors.append(self._sync_error("deprovision", e, user_id))
                        await self._record_failure(
                            db, team_id, ProvisioningOperation.DELETE, ProvisioningResource.USER, e,
                            resource_id=user_id, external_id=external_id
                        )

            status = await self._sync_status(team_id, db)
            status.status = SyncState.IDLE.value
            status.last_sync_at = utcnow()
            status.stats = stats
            status.errors = errors
            status.runs = (status.runs or 0) + 1
            await db.commit()

        except Exception as e:
            logger.error("Provisioning sync failed", team_id=team_id, error=str(e))
            await db.rollback()
            status = await self._sync_status(team_id, db)
            status.status = SyncState.FAILED.value
            status.stats = stats
            status.errors = errors + [self._sync_error("sync", e)]
            await db.commit()
            raise

        logger.info("Provisioning sync completed", team_id=team_id, **stats)
        return SyncStatusResponse.model_validate(status)

    # ========== QUERIES ==========

    async def get_sync_status(self, team_id: str, db: AsyncSession = None) -> Optional[SyncStatus]:
        return await db.get(SyncStatus, team_id)

    async def get_provisioning_logs(
        self,
        team_id: str,
        limit: int = 100,
        db: AsyncSession = None
    ) -> List[ProvisioningLog]:
        result = await db.execute(
            select(ProvisioningLog)
            .where(ProvisioningLog.team_id == team_id)
            .order_by(ProvisioningLog.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# Global provisioning service instance
provisioning_service = ProvisioningService()
