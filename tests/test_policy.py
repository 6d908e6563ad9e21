"""
Team Policy Tests

Policy evaluators, evaluation and enforcement, violation records and the
fast-path password, session and network checks.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from sqlalchemy import select

from teamguard.exceptions import PermissionDeniedError, ValidationError
from teamguard.models.api import (
    PolicyConfig, PolicyCreate, PolicyEnforcement, PolicyRule, PolicyUpdate,
    RuleAction, RuleCondition, RuleOperator
)
from teamguard.models.policy import (
    PolicyAction, PolicyMode, PolicyType, PolicyViolation, Severity, TeamPolicy, severity_for
)
from teamguard.policy.evaluators import (
    EvaluationRequest, PolicyEvaluators, evaluate_custom_rules, ip_in_list, password_errors
)
from teamguard.policy.service import PolicyEnforcementService
from teamguard.rbac.service import SYSTEM_ACTOR


async def create_policy(policy, db, team_id, policy_type, config=None, enforcement=None, name=None):
    return await policy.create_policy(
        PolicyCreate(
            team_id=team_id,
            name=name or f"{policy_type.value} policy",
            type=policy_type,
            config=config or PolicyConfig(),
            enforcement=enforcement or PolicyEnforcement(),
        ),
        SYSTEM_ACTOR, db
    )


def request(action="login", context=None, user_id="u1", now=None):
    return EvaluationRequest(
        user_id=user_id,
        team_id="t1",
        action=action,
        resource=None,
        context=context or {},
        now=now or datetime.now(timezone.utc),
    )


class TestPolicyEvaluators:
    """Test the per-type evaluators in isolation"""

    @pytest.fixture
    def evaluators(self, identity, sessions, devices):
        return PolicyEvaluators(identity, sessions, devices)

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_mfa_grace_period(self, evaluators, identity):
        identity.add("new", created_at=datetime.now(timezone.utc) - timedelta(days=2))
        identity.add("old", created_at=datetime.now(timezone.utc) - timedelta(days=10))
        identity.add("enrolled", mfa_enrolled=True, created_at=datetime.now(timezone.utc) - timedelta(days=10))
        config = PolicyConfig(grace_period_days=7)

        assert not (await evaluators.evaluate_mfa(config, request(user_id="new"))).violated
        assert (await evaluators.evaluate_mfa(config, request(user_id="old"))).violated
        assert not (await evaluators.evaluate_mfa(config, request(user_id="enrolled"))).violated

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_device_trust(self, evaluators, devices):
        config = PolicyConfig(require_trusted_device=True)

        missing = await evaluators.evaluate_device_trust(config, request())
        assert missing.details["reason"] == "No device ID provided"

        untrusted = await evaluators.evaluate_device_trust(config, request(context={"device_id": "d1"}))
        assert untrusted.details["reason"] == "Device is not trusted"

        devices.is_trusted.return_value = True
        trusted = await evaluators.evaluate_device_trust(config, request(context={"device_id": "d1"}))
        assert not trusted.violated
        devices.is_trusted.assert_awaited_with("d1", "u1")

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_export_restrictions(self, evaluators):
        config = PolicyConfig(allowed_formats=["json"], max_export_items=10, require_approval=True)

        bad_format = await evaluators.evaluate_export(config, request("export", {"format": "csv"}))
        too_many = await evaluators.evaluate_export(config, request("export", {"format": "json", "item_count": 11}))
        ok = await evaluators.evaluate_export(config, request("export", {"format": "json", "item_count": 3}))
        other_action = await evaluators.evaluate_export(config, request("login", {"format": "csv"}))

        assert bad_format.details["reason"] == "Export format not allowed"
        assert too_many.details["max_allowed"] == 10
        assert not ok.violated and ok.requires_approval
        assert not other_action.violated

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_sharing_applies_to_vault_member_additions(self, evaluators):
        config = PolicyConfig(allow_sharing=False)

        assert (await evaluators.evaluate_sharing(config, request("share"))).violated
        assert (await evaluators.evaluate_sharing(config, request("member.added"))).violated
        assert not (await evaluators.evaluate_sharing(config, request("account.added"))).violated

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_sharing_recipient_limit(self, evaluators):
        config = PolicyConfig(max_share_recipients=2)

        result = await evaluators.evaluate_sharing(config, request("share", {"recipients": ["a", "b", "c"]}))
        assert result.details == {
            "reason": "Too many share recipients", "recipient_count": 3, "max_allowed": 2
        }

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_session_timeout(self, evaluators):
        config = PolicyConfig(timeout_minutes=30)
        now = datetime.now(timezone.utc)

        stale = await evaluators.evaluate_session(
            config, request(context={"session_started_at": (now - timedelta(minutes=31)).isoformat()}, now=now)
        )
        fresh = await evaluators.evaluate_session(
            config, request(context={"session_started_at": (now - timedelta(minutes=5)).isoformat()}, now=now)
        )

        assert stale.violated
        assert not fresh.violated

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_password_expiry_warning(self, evaluators):
        config = PolicyConfig(expiry_days=90, warning_days=14)
        now = datetime.now(timezone.utc)

        expired = await evaluators.evaluate_password_expiry(
            config, request(context={"password_changed_at": now - timedelta(days=91)}, now=now)
        )
        expiring = await evaluators.evaluate_password_expiry(
            config, request(context={"password_changed_at": now - timedelta(days=80)}, now=now)
        )

        assert expired.details["reason"] == "Password expired"
        assert not expiring.violated
        assert expiring.warnings == ["Password expires in 10 days"]

    @pytest.mark.unit
    @pytest.mark.policy
    def test_custom_rules_first_match_wins(self):
        rules = [
            PolicyRule(id="r1", condition=RuleCondition(field="resource", operator=RuleOperator.REGEX,
                                                        value="^vault:"),
                       action=RuleAction.REQUIRE_APPROVAL),
            PolicyRule(id="r2", condition=RuleCondition(field="action", operator=RuleOperator.EQUALS,
                                                        value="export"),
                       action=RuleAction.DENY, message="Exports are frozen"),
        ]
        vault_request = EvaluationRequest("u1", "t1", "export", "vault:1", {}, datetime.now(timezone.utc))
        export_request = EvaluationRequest("u1", "t1", "export", "accounts", {}, datetime.now(timezone.utc))

        assert evaluate_custom_rules(rules, vault_request).requires_approval
        denied = evaluate_custom_rules(rules, export_request)
        assert denied.violated
        assert denied.details == {"reason": "Exports are frozen", "rule_id": "r2"}

    @pytest.mark.unit
    @pytest.mark.policy
    def test_ip_lists_accept_addresses_and_networks(self):
        entries = ["10.0.0.0/8", "192.168.1.7", "not-an-ip"]

        assert ip_in_list("10.20.30.40", entries)
        assert ip_in_list("192.168.1.7", entries)
        assert not ip_in_list("192.168.1.8", entries)

    @pytest.mark.unit
    @pytest.mark.policy
    def test_password_errors(self):
        config = PolicyConfig(min_length=12, require_uppercase=True, require_numbers=True,
                              require_special_chars=True)

        assert password_errors(config, "short") == [
            "Password must be at least 12 characters",
            "Password must contain uppercase letters",
            "Password must contain numbers",
            "Password must contain special characters",
        ]
        assert password_errors(config, "Correct.Horse!42") == []

    @pytest.mark.unit
    @pytest.mark.policy
    def test_severity_is_fixed_per_type(self):
        assert severity_for(PolicyType.MFA_REQUIREMENT) == Severity.HIGH
        assert severity_for(PolicyType.IP_RESTRICTION) == Severity.CRITICAL
        assert severity_for(PolicyType.DEVICE_TRUST) == Severity.CRITICAL
        assert severity_for(PolicyType.GEOLOCATION) == Severity.LOW
        assert severity_for(PolicyType.PASSWORD_EXPIRY) == Severity.LOW
        assert severity_for(PolicyType.SESSION_TIMEOUT) == Severity.MEDIUM
        assert severity_for(PolicyType.RETENTION) == Severity.LOW


class TestPolicyManagement:
    """Test policy creation, updates and caching"""

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_create_and_list_policies(self, async_session, policy, team_id):
        policy_id = await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT)

        policies = await policy.get_team_policies(team_id, db=async_session)
        assert [p.id for p in policies] == [policy_id]
        assert policies[0].enforcement.mode == PolicyMode.ENFORCE

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_disabled_policies_are_not_listed(self, async_session, policy, team_id):
        policy_id = await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT)
        await policy.get_team_policies(team_id, db=async_session)

        await policy.update_policy(policy_id, PolicyUpdate(enabled=False), SYSTEM_ACTOR, async_session)

        assert await policy.get_team_policies(team_id, db=async_session) == []
        stored = await policy.get_policy(policy_id, async_session)
        assert stored.updated_by == SYSTEM_ACTOR

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.security
    @pytest.mark.asyncio
    async def test_member_cannot_create_policies(self, async_session, policy, grant, make_user, team_id):
        member_id = await make_user(team_id)
        await grant(member_id, "team_member", team_id)

        with pytest.raises(PermissionDeniedError, match="Insufficient permissions to create policies"):
            await policy.create_policy(
                PolicyCreate(team_id=team_id, name="IP lock", type=PolicyType.IP_RESTRICTION),
                member_id, async_session
            )

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_team_admin_can_create_policies(self, async_session, policy, grant, make_user, team_id):
        admin_id = await make_user(team_id)
        await grant(admin_id, "team_admin", team_id)

        policy_id = await policy.create_policy(
            PolicyCreate(team_id=team_id, name="IP lock", type=PolicyType.IP_RESTRICTION),
            admin_id, async_session
        )
        assert (await policy.get_policy(policy_id, async_session)).created_by == admin_id


class TestPolicyEvaluation:
    """Test evaluate_policies and enforcement"""

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_no_policies_allows(self, async_session, policy, team_id):
        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        assert evaluation.allowed is True
        assert evaluation.violated is False
        assert evaluation.applied_policies == []

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_mfa_requirement_without_grace_period(self, async_session, policy, identity, team_id):
        """Test a user without MFA violates a zero-grace MFA policy with high severity"""
        identity.add("u1", mfa_enrolled=False)
        await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT,
                            config=PolicyConfig(grace_period_days=0))

        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        assert evaluation.violated is True
        assert evaluation.allowed is False
        assert len(evaluation.violations) == 1
        assert evaluation.violations[0].severity == Severity.HIGH
        assert evaluation.violations[0].policy_type == PolicyType.MFA_REQUIREMENT

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_repeated_evaluation_records_each_violation(self, async_session, policy, identity, team_id):
        """Test identical evaluations agree on the verdict but are never deduplicated"""
        identity.add("u1", mfa_enrolled=False)
        policy_id = await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT,
                                        config=PolicyConfig(grace_period_days=0))

        first = await policy.evaluate_policies("u1", team_id, "login", db=async_session)
        second = await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        assert (first.allowed, first.violated) == (second.allowed, second.violated)
        assert first.violations[0].id != second.violations[0].id

        violations = await policy.get_policy_violations(team_id, db=async_session)
        assert len(violations) == 2
        assert all(v.user_email == identity.users["u1"].email for v in violations)

        count = await async_session.scalar(
            select(TeamPolicy.violation_count).where(TeamPolicy.id == policy_id)
        )
        assert count == 2

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_exempt_user_never_violates(self, async_session, policy, identity, team_id):
        identity.add("exempt")
        identity.add("other")
        await create_policy(
            policy, async_session, team_id, PolicyType.SHARING_RESTRICTION,
            config=PolicyConfig(allow_sharing=False,
                                custom_rules=[PolicyRule(
                                    id="deny-all",
                                    condition=RuleCondition(field="action", operator=RuleOperator.NOT_EQUALS,
                                                            value=""),
                                    action=RuleAction.DENY,
                                )]),
            enforcement=PolicyEnforcement(exempt_users=["exempt"])
        )

        for action in ("share", "export", "login", "member.added"):
            evaluation = await policy.evaluate_policies("exempt", team_id, action, db=async_session)
            assert evaluation.violated is False
            assert evaluation.applied_policies == []

        other = await policy.evaluate_policies("other", team_id, "share", db=async_session)
        assert other.violated is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_exempt_role_skips_policy(self, async_session, policy, grant, make_user, team_id):
        admin_id = await make_user(team_id)
        await grant(admin_id, "team_admin", team_id)
        await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT,
                            config=PolicyConfig(grace_period_days=0),
                            enforcement=PolicyEnforcement(exempt_roles=["team_admin"]))

        evaluation = await policy.evaluate_policies(admin_id, team_id, "login", db=async_session)
        assert evaluation.violated is False

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_warn_mode_records_but_allows(self, async_session, policy, identity, team_id):
        identity.add("u1")
        await create_policy(policy, async_session, team_id, PolicyType.GEOLOCATION,
                            config=PolicyConfig(blocked_countries=["KP"]),
                            enforcement=PolicyEnforcement(mode=PolicyMode.WARN),
                            name="Geo fence")

        evaluation = await policy.evaluate_policies("u1", team_id, "login", context={"country": "KP"},
                                                    db=async_session)

        assert evaluation.allowed is True
        assert evaluation.violated is True
        assert evaluation.violations[0].severity == Severity.CRITICAL
        assert "Policy violation: Geo fence" in evaluation.warnings

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_block_action_blocks_in_audit_mode(self, async_session, policy, identity, team_id):
        identity.add("u1")
        await create_policy(policy, async_session, team_id, PolicyType.IP_RESTRICTION,
                            config=PolicyConfig(blocked_ips=["1.2.3.4"]),
                            enforcement=PolicyEnforcement(mode=PolicyMode.AUDIT,
                                                          actions=[PolicyAction.BLOCK_ACTION]))

        evaluation = await policy.evaluate_policies("u1", team_id, "login",
                                                    context={"ip_address": "1.2.3.4"}, db=async_session)
        assert evaluation.allowed is False

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_enforce_without_blocking_allows(self, async_session, policy, identity, team_id):
        identity.add("u1")
        await create_policy(policy, async_session, team_id, PolicyType.IP_RESTRICTION,
                            config=PolicyConfig(blocked_ips=["1.2.3.4"]),
                            enforcement=PolicyEnforcement(block_on_violation=False))

        evaluation = await policy.evaluate_policies("u1", team_id, "login",
                                                    context={"ip_address": "1.2.3.4"}, db=async_session)
        assert evaluation.allowed is True
        assert evaluation.violated is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_enforcement_actions_reach_collaborators(
        self, async_session, policy, identity, sessions, notifier, hooks, team_id
    ):
        identity.add("u1")
        await create_policy(policy, async_session, team_id, PolicyType.DEVICE_TRUST,
                            config=PolicyConfig(require_trusted_device=True),
                            enforcement=PolicyEnforcement(actions=[
                                PolicyAction.NOTIFY_USER, PolicyAction.NOTIFY_ADMIN,
                                PolicyAction.FORCE_LOGOUT, PolicyAction.DISABLE_ACCOUNT,
                                PolicyAction.CUSTOM_WEBHOOK,
                            ]))

        await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        notifier.notify_user.assert_awaited_once()
        notifier.notify_admins.assert_awaited_once()
        sessions.invalidate_user_sessions.assert_awaited_once_with("u1")
        hooks.disable_account.assert_awaited_once()
        hooks.dispatch_webhook.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_failing_enforcement_action_does_not_abort(self, async_session, policy, identity, hooks, team_id):
        identity.add("u1")
        hooks.disable_account.side_effect = RuntimeError("directory unavailable")
        await create_policy(policy, async_session, team_id, PolicyType.DEVICE_TRUST,
                            config=PolicyConfig(require_trusted_device=True),
                            enforcement=PolicyEnforcement(actions=[PolicyAction.DISABLE_ACCOUNT]))

        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        assert evaluation.violated is True
        assert evaluation.allowed is False

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_approval_workflow_requires_approval(self, async_session, policy, team_id):
        await create_policy(policy, async_session, team_id, PolicyType.APPROVAL_WORKFLOW,
                            config=PolicyConfig(approval_actions=["export"]))

        export = await policy.evaluate_policies("u1", team_id, "export", db=async_session)
        login = await policy.evaluate_policies("u1", team_id, "login", db=async_session)

        assert export.requires_approval is True
        assert export.allowed is True
        assert login.requires_approval is False

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_evaluation_fails_open_by_default(self, async_session, policy, team_id):
        policy.get_team_policies = AsyncMock(side_effect=RuntimeError("store offline"))

        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=async_session)
        assert evaluation.allowed is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_failed_rollback_does_not_escape(self, policy, team_id):
        """Test evaluation still returns a result when the session cannot roll back"""
        policy.get_team_policies = AsyncMock(side_effect=RuntimeError("store offline"))
        broken_session = AsyncMock()
        broken_session.rollback.side_effect = RuntimeError("connection lost")

        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=broken_session)
        assert evaluation.allowed is True
        broken_session.rollback.assert_awaited_once()

        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=None)
        assert evaluation.allowed is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.security
    @pytest.mark.asyncio
    async def test_evaluation_can_fail_closed(self, async_session, rbac, identity, sessions, devices, team_id):
        strict = PolicyEnforcementService(rbac=rbac, identity=identity, sessions=sessions,
                                          devices=devices, fail_open=False)
        strict.get_team_policies = AsyncMock(side_effect=RuntimeError("store offline"))

        evaluation = await strict.evaluate_policies("u1", team_id, "login", db=async_session)
        assert evaluation.allowed is False
        assert evaluation.warnings == ["Policy evaluation failed"]


class TestViolations:
    """Test violation queries and resolution"""

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_resolve_violation(self, async_session, policy, identity, team_id):
        identity.add("u1")
        await create_policy(policy, async_session, team_id, PolicyType.MFA_REQUIREMENT,
                            config=PolicyConfig(grace_period_days=0))
        evaluation = await policy.evaluate_policies("u1", team_id, "login", db=async_session)
        violation_id = evaluation.violations[0].id

        await policy.resolve_violation(violation_id, SYSTEM_ACTOR, "User enrolled in MFA", async_session)

        resolved = await policy.get_policy_violations(team_id, resolved=True, db=async_session)
        open_ = await policy.get_policy_violations(team_id, resolved=False, db=async_session)
        assert [v.id for v in resolved] == [violation_id]
        assert open_ == []
        assert resolved[0].resolution == "User enrolled in MFA"

        with pytest.raises(ValidationError, match="Violation already resolved"):
            await policy.resolve_violation(violation_id, SYSTEM_ACTOR, "again", async_session)

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_old_violations_fall_outside_window(self, async_session, policy, team_id):
        async_session.add(PolicyViolation(
            team_id=team_id, policy_id="p1", policy_name="old", policy_type=PolicyType.MFA_REQUIREMENT.value,
            user_id="u1", action="login", severity=Severity.HIGH.value,
            timestamp=datetime.now(timezone.utc) - timedelta(days=45),
        ))
        await async_session.commit()

        assert await policy.get_policy_violations(team_id, days=30, db=async_session) == []
        assert len(await policy.get_policy_violations(team_id, days=60, db=async_session)) == 1


class TestFastPathChecks:
    """Test the password, session and IP pre-flight checks"""

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_blocked_ip(self, async_session, policy, team_id):
        await create_policy(policy, async_session, team_id, PolicyType.IP_RESTRICTION,
                            config=PolicyConfig(blocked_ips=["1.2.3.4"]))

        blocked = await policy.check_ip_policy(team_id, "1.2.3.4", db=async_session)
        other = await policy.check_ip_policy(team_id, "5.6.7.8", db=async_session)

        assert blocked.allowed is False
        assert blocked.reason == "IP address is blocked"
        assert other.allowed is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_ip_allow_list_and_country(self, async_session, policy, team_id):
        await create_policy(policy, async_session, team_id, PolicyType.IP_RESTRICTION,
                            config=PolicyConfig(allowed_ips=["10.0.0.0/8"]))
        await create_policy(policy, async_session, team_id, PolicyType.GEOLOCATION,
                            config=PolicyConfig(allowed_countries=["GB", "IE"]))

        inside = await policy.check_ip_policy(team_id, "10.1.2.3", "GB", async_session)
        outside = await policy.check_ip_policy(team_id, "192.168.1.1", "GB", async_session)
        abroad = await policy.check_ip_policy(team_id, "10.1.2.3", "FR", async_session)

        assert inside.allowed is True
        assert outside.reason == "IP address is not in allowed list"
        assert abroad.reason == "Access from FR is not allowed"

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_password_policy(self, async_session, policy, team_id):
        await create_policy(policy, async_session, team_id, PolicyType.PASSWORD_COMPLEXITY,
                            config=PolicyConfig(min_length=10, require_numbers=True))

        weak = await policy.check_password_policy(team_id, "abc", async_session)
        strong = await policy.check_password_policy(team_id, "abcdefgh12", async_session)

        assert weak.valid is False
        assert weak.errors == ["Password must be at least 10 characters", "Password must contain numbers"]
        assert strong.valid is True

    @pytest.mark.unit
    @pytest.mark.policy
    @pytest.mark.asyncio
    async def test_session_limit(self, async_session, policy, sessions, team_id):
        await create_policy(policy, async_session, team_id, PolicyType.SESSION_TIMEOUT,
                            config=PolicyConfig(max_concurrent_sessions=2))
        sessions.open("u1", count=1)
        sessions.open("u2", count=2)

        assert (await policy.check_session_policy(team_id, "u1", async_session)).allowed is True
        at_limit = await policy.check_session_policy(team_id, "u2", async_session)
        assert at_limit.allowed is False
        assert at_limit.reason == "Maximum concurrent sessions (2) exceeded"
