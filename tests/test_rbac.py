"""
RBAC System Tests

Permission checks over hierarchical resources, role assignment and
revocation, custom role management and permission caching.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select

from teamguard.database import utcnow
from teamguard.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from teamguard.models.api import ConditionSpec, PermissionContext, PermissionSpec, RoleCreate, RoleUpdate
from teamguard.models.rbac import (
    Action, AuditLog, ConditionOperator, ConditionType, PermissionEffect, Resource, UserRole
)
from teamguard.rbac.matching import condition_holds, conditions_hold, resource_matches
from teamguard.rbac.service import SYSTEM_ACTOR


class TestResourceMatching:
    """Test hierarchical resource and condition matching"""

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.parametrize("granted,requested", [
        (Resource.ACCOUNTS, Resource.ACCOUNTS),
        (Resource.ACCOUNTS, Resource.ACCOUNTS_CREATE),
        (Resource.TEAM, Resource.TEAM_ROLES),
        (Resource.SECURITY, Resource.SECURITY_AUDIT),
    ])
    def test_parent_grant_covers_children(self, granted, requested):
        assert resource_matches(granted, requested)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.parametrize("granted,requested", [
        (Resource.ACCOUNTS_CREATE, Resource.ACCOUNTS),
        (Resource.ACCOUNTS, Resource.ADMIN_USERS),
        (Resource.VAULTS_READ, Resource.VAULTS_UPDATE),
        (Resource.TEAM_MEMBERS, Resource.TEAM_ROLES),
    ])
    def test_unrelated_or_parent_resources_do_not_match(self, granted, requested):
        assert not resource_matches(granted, requested)

    @pytest.mark.unit
    @pytest.mark.rbac
    def test_own_condition_requires_matching_owner(self):
        condition = ConditionSpec(type=ConditionType.OWN)
        assert condition_holds(condition, "u1", PermissionContext(resource_owner_id="u1"))
        assert not condition_holds(condition, "u1", PermissionContext(resource_owner_id="u2"))
        assert not condition_holds(condition, "u1", PermissionContext())

    @pytest.mark.unit
    @pytest.mark.rbac
    def test_custom_condition_operators(self):
        context = PermissionContext(custom={"shared": True, "tags": ["finance", "ops"], "tier": "gold"})

        equals = ConditionSpec(type=ConditionType.CUSTOM, field="shared", operator=ConditionOperator.EQUALS, value=True)
        contains = ConditionSpec(type=ConditionType.CUSTOM, field="tags", operator=ConditionOperator.CONTAINS, value="ops")
        member_of = ConditionSpec(type=ConditionType.CUSTOM, field="tier", operator=ConditionOperator.IN,
                                  value=["gold", "platinum"])
        missing = ConditionSpec(type=ConditionType.CUSTOM, field="region", operator=ConditionOperator.EQUALS, value="eu")

        assert conditions_hold([equals, contains, member_of], "u1", context)
        assert not conditions_hold([equals, missing], "u1", context)

    @pytest.mark.unit
    @pytest.mark.rbac
    def test_no_conditions_always_hold(self):
        assert conditions_hold([], "u1", None)


class TestPermissionChecks:
    """Test RBACService.check_permission"""

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_user_without_roles_is_denied(self, async_session, rbac, seeded_roles, make_user):
        """Test that a user with no active assignment is always denied"""
        user_id = await make_user()

        for resource, action in [(Resource.ACCOUNTS, Action.READ), (Resource.VAULTS_CREATE, Action.CREATE)]:
            check = await rbac.check_permission(user_id, resource, action, db=async_session)
            assert check.allowed is False
            assert check.reason == "No roles assigned"

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_parent_grant_allows_child_resource(self, async_session, rbac, grant, make_user, team_id):
        """Test that team_admin's grant on vaults covers vaults.create"""
        user_id = await make_user(team_id)
        await grant(user_id, "team_admin", team_id)
        context = PermissionContext(team_id=team_id)

        allowed = await rbac.check_permission(user_id, Resource.VAULTS_CREATE, Action.CREATE, context, async_session)
        assert allowed.allowed is True
        assert allowed.matched_role == "team_admin"

        unrelated = await rbac.check_permission(user_id, Resource.ADMIN_BILLING, Action.READ, context, async_session)
        assert unrelated.allowed is False
        assert unrelated.reason == "No matching permissions"

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_team_member_can_only_update_own_accounts(self, async_session, rbac, grant, make_user, team_id):
        """Test the team_member own-condition on accounts"""
        user_id = await make_user(team_id)
        other_id = await make_user(team_id)
        await grant(user_id, "team_member", team_id)

        others = await rbac.check_permission(
            user_id, Resource.ACCOUNTS, Action.UPDATE,
            PermissionContext(team_id=team_id, resource_owner_id=other_id), async_session
        )
        own = await rbac.check_permission(
            user_id, Resource.ACCOUNTS, Action.UPDATE,
            PermissionContext(team_id=team_id, resource_owner_id=user_id), async_session
        )

        assert others.allowed is False
        assert own.allowed is True

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_team_scoped_role_does_not_apply_to_other_teams(self, async_session, rbac, grant, make_user, team_id):
        user_id = await make_user(team_id)
        await grant(user_id, "team_admin", team_id)

        other_team = await rbac.check_permission(
            user_id, Resource.VAULTS, Action.READ, PermissionContext(team_id="another-team"), async_session
        )
        assert other_team.allowed is False

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_global_role_applies_in_every_team(self, async_session, rbac, grant, make_user):
        user_id = await make_user()
        await grant(user_id, "super_admin")

        check = await rbac.check_permission(
            user_id, Resource.ADMIN_SETTINGS, Action.CREATE, PermissionContext(team_id="any-team"), async_session
        )
        assert check.allowed is True

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_expired_assignment_is_ignored(self, async_session, rbac, grant, make_user, team_id):
        user_id = await make_user(team_id)
        await grant(user_id, "team_admin", team_id, expires_at=utcnow() - timedelta(minutes=1))

        check = await rbac.check_permission(
            user_id, Resource.VAULTS, Action.READ, PermissionContext(team_id=team_id), async_session
        )
        assert check.allowed is False
        assert check.reason == "No roles assigned"

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.security
    @pytest.mark.asyncio
    async def test_explicit_deny_overrides_higher_priority_grant(self, async_session, rbac, grant, make_user, team_id):
        """Test that a deny permission wins regardless of role priority"""
        user_id = await make_user(team_id)
        await grant(user_id, "team_admin", team_id)

        deny_role_id = await rbac.create_role(
            RoleCreate(
                name="no_vault_deletes",
                priority=1,
                permissions=[PermissionSpec(
                    resource=Resource.VAULTS_DELETE,
                    actions=[Action.DELETE],
                    effect=PermissionEffect.DENY,
                )],
            ),
            SYSTEM_ACTOR, db=async_session
        )
        await rbac.assign_role(user_id, deny_role_id, SYSTEM_ACTOR, team_id, db=async_session)

        context = PermissionContext(team_id=team_id)
        denied = await rbac.check_permission(user_id, Resource.VAULTS_DELETE, Action.DELETE, context, async_session)
        still_allowed = await rbac.check_permission(user_id, Resource.VAULTS_UPDATE, Action.UPDATE, context, async_session)

        assert denied.allowed is False
        assert denied.reason == "Explicitly denied by role no_vault_deletes"
        assert still_allowed.allowed is True

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_invalid_resource_fails_closed(self, async_session, rbac, seeded_roles, make_user):
        user_id = await make_user()

        check = await rbac.check_permission(user_id, "not.a.resource", Action.READ, db=async_session)
        assert check.allowed is False
        assert check.reason == "Permission check failed"


class TestRoleAssignment:
    """Test role assignment and revocation"""

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_assign_then_revoke_restores_deny(self, async_session, rbac, make_user, team_id):
        """Test that assign followed by revoke leaves the role's permissions denied"""
        user_id = await make_user(team_id)
        role_id = await rbac.create_role(
            RoleCreate(name="report_exporter", permissions=[
                PermissionSpec(resource=Resource.COMPLIANCE_REPORTS, actions=[Action.EXPORT])
            ]),
            SYSTEM_ACTOR, db=async_session
        )
        context = PermissionContext(team_id=team_id)

        await rbac.assign_role(user_id, role_id, SYSTEM_ACTOR, team_id, db=async_session)
        granted = await rbac.check_permission(user_id, Resource.COMPLIANCE_REPORTS, Action.EXPORT, context, async_session)
        assert granted.allowed is True

        await rbac.revoke_role(user_id, role_id, SYSTEM_ACTOR, team_id, db=async_session)
        revoked = await rbac.check_permission(user_id, Resource.COMPLIANCE_REPORTS, Action.EXPORT, context, async_session)
        assert revoked.allowed is False

        assignment = (await async_session.execute(
            select(UserRole).where(UserRole.user_id == user_id)
        )).scalar_one()
        assert assignment.is_active is False
        assert assignment.revoked_by == SYSTEM_ACTOR
        assert assignment.revoked_at is not None

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_duplicate_assignment_rejected(self, async_session, grant, make_user, team_id):
        user_id = await make_user(team_id)
        await grant(user_id, "team_member", team_id)

        with pytest.raises(ValidationError, match="Role already assigned"):
            await grant(user_id, "team_member", team_id)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_assign_unknown_role(self, async_session, rbac, seeded_roles, make_user):
        user_id = await make_user()

        with pytest.raises(NotFoundError, match="Role not found"):
            await rbac.assign_role(user_id, "missing", SYSTEM_ACTOR, db=async_session)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_revoke_without_assignment(self, async_session, rbac, seeded_roles, make_user):
        user_id = await make_user()

        with pytest.raises(NotFoundError, match="Role assignment not found"):
            await rbac.revoke_role(user_id, seeded_roles["guest"], SYSTEM_ACTOR, db=async_session)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.security
    @pytest.mark.asyncio
    async def test_member_cannot_assign_roles(self, async_session, rbac, grant, seeded_roles, make_user, team_id):
        member_id = await make_user(team_id)
        target_id = await make_user(team_id)
        await grant(member_id, "team_member", team_id)

        with pytest.raises(PermissionDeniedError, match="Insufficient permissions to assign roles"):
            await rbac.assign_role(target_id, seeded_roles["team_admin"], member_id, team_id, db=async_session)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_team_admin_assigns_within_team(self, async_session, rbac, grant, seeded_roles, make_user, team_id):
        admin_id = await make_user(team_id)
        target_id = await make_user(team_id)
        await grant(admin_id, "team_admin", team_id)

        assignment_id = await rbac.assign_role(
            target_id, seeded_roles["team_member"], admin_id, team_id, db=async_session
        )

        audit = (await async_session.execute(
            select(AuditLog).where(AuditLog.resource_id == assignment_id)
        )).scalar_one()
        assert audit.action == "role_assigned"
        assert audit.user_id == admin_id
        assert audit.affected_user_id == target_id


class TestRoleManagement:
    """Test custom role lifecycle and system role protection"""

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_initialize_system_roles(self, async_session, rbac):
        """Test system roles are seeded once from YAML"""
        seeded = await rbac.initialize_roles(async_session)
        again = await rbac.initialize_roles(async_session)

        roles = {role.name: role for role in await rbac.get_roles(async_session)}
        assert seeded == 6
        assert again == 0
        assert set(roles) == {
            "super_admin", "team_admin", "compliance_officer", "team_manager", "team_member", "guest"
        }
        assert all(role.is_system for role in roles.values())
        assert roles["super_admin"].priority == 100

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.parametrize("role_name", ["super_admin", "team_member", "guest"])
    @pytest.mark.asyncio
    async def test_system_roles_are_immutable(self, async_session, rbac, seeded_roles, role_name):
        role_id = seeded_roles[role_name]

        with pytest.raises(ValidationError, match="Cannot modify system roles"):
            await rbac.update_role(role_id, RoleUpdate(description="changed"), SYSTEM_ACTOR, db=async_session)
        with pytest.raises(ValidationError, match="Cannot delete system roles"):
            await rbac.delete_role(role_id, SYSTEM_ACTOR, db=async_session)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_delete_role_only_when_unassigned(self, async_session, rbac, seeded_roles, make_user):
        """Test that a held role cannot be deleted until its last assignment is revoked"""
        user_id = await make_user()
        role_id = await rbac.create_role(RoleCreate(name="auditor"), SYSTEM_ACTOR, db=async_session)
        await rbac.assign_role(user_id, role_id, SYSTEM_ACTOR, db=async_session)

        with pytest.raises(ValidationError, match="Cannot delete role that is assigned to users"):
            await rbac.delete_role(role_id, SYSTEM_ACTOR, db=async_session)

        await rbac.revoke_role(user_id, role_id, SYSTEM_ACTOR, db=async_session)
        await rbac.delete_role(role_id, SYSTEM_ACTOR, db=async_session)

        assert await rbac.get_role(role_id, async_session) is None

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_role_names_are_unique(self, async_session, rbac, seeded_roles):
        with pytest.raises(ValidationError, match="Role name already exists"):
            await rbac.create_role(RoleCreate(name="team_admin"), SYSTEM_ACTOR, db=async_session)

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_update_role_invalidates_holder_cache(self, async_session, rbac, make_user):
        user_id = await make_user()
        role_id = await rbac.create_role(
            RoleCreate(name="reader", permissions=[
                PermissionSpec(resource=Resource.ACCOUNTS_READ, actions=[Action.READ])
            ]),
            SYSTEM_ACTOR, db=async_session
        )
        await rbac.assign_role(user_id, role_id, SYSTEM_ACTOR, db=async_session)

        before = await rbac.check_permission(user_id, Resource.ACCOUNTS_EXPORT, Action.EXPORT, db=async_session)
        assert before.allowed is False

        await rbac.update_role(
            role_id,
            RoleUpdate(permissions=[PermissionSpec(resource=Resource.ACCOUNTS, actions=[Action.READ, Action.EXPORT])]),
            SYSTEM_ACTOR, db=async_session
        )
        after = await rbac.check_permission(user_id, Resource.ACCOUNTS_EXPORT, Action.EXPORT, db=async_session)
        assert after.allowed is True


class TestEffectivePermissions:
    """Test permission aggregation and caching"""

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_get_user_permissions(self, async_session, rbac, grant, make_user, team_id):
        user_id = await make_user(team_id)
        await grant(user_id, "team_manager", team_id)
        await grant(user_id, "compliance_officer")

        effective = await rbac.get_user_permissions(user_id, team_id, async_session)

        assert effective.roles == ["compliance_officer", "team_manager"]
        assert set(effective.permissions["vaults"]) == {"create", "read", "update", "share"}
        assert set(effective.permissions["security.audit"]) == {"read", "export"}
        assert effective.is_admin is False

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_super_admin_is_admin(self, async_session, rbac, grant, make_user):
        user_id = await make_user()
        await grant(user_id, "super_admin")

        effective = await rbac.get_user_permissions(user_id, db=async_session)
        assert effective.is_admin is True

    @pytest.mark.unit
    @pytest.mark.rbac
    @pytest.mark.asyncio
    async def test_cached_decision_expires(self, async_session, rbac, seeded_roles, make_user, clock):
        """Test a cached denial is served until the TTL lapses"""
        user_id = await make_user()
        denied = await rbac.check_permission(user_id, Resource.ACCOUNTS, Action.READ, db=async_session)
        assert denied.allowed is False

        # Granted behind the service's back, so nothing invalidates the cache
        async_session.add(UserRole(
            user_id=user_id, role_id=seeded_roles["super_admin"], granted_by=SYSTEM_ACTOR
        ))
        await async_session.commit()

        cached = await rbac.check_permission(user_id, Resource.ACCOUNTS, Action.READ, db=async_session)
        assert cached.allowed is False

        clock.advance(rbac.cache_ttl_seconds + 1)
        fresh = await rbac.check_permission(user_id, Resource.ACCOUNTS, Action.READ, db=async_session)
        assert fresh.allowed is True

    @pytest.mark.unit
    @pytest.mark.rbac
    def test_cache_ttl_capped_by_assignment_expiry(self, rbac):
        expiring = UserRole(user_id="u1", role_id="r1", granted_by=SYSTEM_ACTOR,
                            expires_at=utcnow() + timedelta(seconds=60))

        assert rbac._cache_ttl([]) == rbac.cache_ttl_seconds
        assert rbac._cache_ttl([expiring]) <= 60
