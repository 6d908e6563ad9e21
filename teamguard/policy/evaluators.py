"""
Policy evaluators

One evaluator per policy type. Evaluators are read-only: they consult
collaborators but never write, so the service can run them concurrently.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from ..collaborators import DeviceTrustOracle, IdentityProvider, SessionProvider
from ..models.api import PolicyConfig, PolicyRule, RuleAction, RuleOperator
from ..models.policy import PolicyType

logger = structlog.get_logger(__name__)

SPECIAL_CHARS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

# Adding a vault member shares every credential in the vault
SHARE_ACTIONS = ("share", "member.added")


@dataclass
class EvaluationRequest:
    user_id: str
    team_id: str
    action: str
    resource: Optional[str]
    context: Dict[str, Any]
    now: datetime


@dataclass
class EvaluationResult:
    violated: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    warnings: List[str] = field(default_factory=list)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def ip_in_list(ip_address: str, entries: List[str]) -> bool:
    """Entries are exact addresses or CIDR networks"""
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return ip_address in entries

    for entry in entries:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("Ignoring malformed IP rule", entry=entry)
    return False


def ip_rule_violation(config: PolicyConfig, ip_address: Optional[str]) -> Optional[str]:
    if not ip_address:
        return None
    if config.blocked_ips and ip_in_list(ip_address, config.blocked_ips):
        return "IP address is blocked"
    if config.allowed_ips and not ip_in_list(ip_address, config.allowed_ips):
        return "IP address is not in allowed list"
    return None


def country_rule_violation(config: PolicyConfig, country: Optional[str]) -> Optional[str]:
    if not country:
        return None
    if country in config.blocked_countries:
        return f"Access from {country} is blocked"
    if config.allowed_countries and country not in config.allowed_countries:
        return f"Access from {country} is not allowed"
    return None


def password_errors(config: PolicyConfig, password: str) -> List[str]:
    errors = []
    if config.min_length and len(password) < config.min_length:
        errors.append(f"Password must be at least {config.min_length} characters")
    if config.require_uppercase and not re.search(r'[A-Z]', password):
        errors.append("Password must contain uppercase letters")
    if config.require_lowercase and not re.search(r'[a-z]', password):
        errors.append("Password must contain lowercase letters")
    if config.require_numbers and not re.search(r'\d', password):
        errors.append("Password must contain numbers")
    if config.require_special_chars and not SPECIAL_CHARS.search(password):
        errors.append("Password must contain special characters")
    return errors


def _compare(operator: RuleOperator, actual: Any, expected: Any) -> bool:
    if operator == RuleOperator.EQUALS:
        return actual == expected
    if operator == RuleOperator.NOT_EQUALS:
        return actual != expected
    if actual is None:
        return False
    try:
        if operator == RuleOperator.CONTAINS:
            return expected in actual
        if operator == RuleOperator.GREATER_THAN:
            return actual > expected
        if operator == RuleOperator.LESS_THAN:
            return actual < expected
        if operator == RuleOperator.REGEX:
            return re.search(str(expected), str(actual)) is not None
    except (TypeError, re.error):
        return False
    return False


def evaluate_custom_rules(rules: List[PolicyRule], request: EvaluationRequest) -> EvaluationResult:
    """First matching rule decides"""
    facts = {
        "action": request.action,
        "resource": request.resource,
        "user_id": request.user_id,
        "team_id": request.team_id,
        **request.context,
    }
    for rule in rules:
        if not _compare(rule.condition.operator, facts.get(rule.condition.field), rule.condition.value):
            continue
        if rule.action == RuleAction.DENY:
            return EvaluationResult(
                violated=True,
                details={"reason": rule.message or "Denied by policy rule", "rule_id": rule.id},
            )
        if rule.action == RuleAction.REQUIRE_APPROVAL:
            return EvaluationResult(requires_approval=True, details={"rule_id": rule.id})
        if rule.action == RuleAction.NOTIFY:
            return EvaluationResult(warnings=[rule.message or f"Policy rule {rule.id} matched"])
        return EvaluationResult()
    return EvaluationResult()


Evaluator = Callable[[PolicyConfig, EvaluationRequest], Awaitable[EvaluationResult]]


class PolicyEvaluators:
    """Type-specific evaluation backed by identity, session and device collaborators"""

    def __init__(
        self,
        identity: IdentityProvider,
        sessions: SessionProvider,
        devices: DeviceTrustOracle
    ):
        self.identity = identity
        self.sessions = sessions
        self.devices = devices
        self._evaluators: Dict[PolicyType, Evaluator] = {
            PolicyType.MFA_REQUIREMENT: self.evaluate_mfa,
            PolicyType.DEVICE_TRUST: self.evaluate_device_trust,
            PolicyType.EXPORT_RESTRICTION: self.evaluate_export,
            PolicyType.SHARING_RESTRICTION: self.evaluate_sharing,
            PolicyType.IP_RESTRICTION: self.evaluate_ip,
            PolicyType.GEOLOCATION: self.evaluate_geolocation,
            PolicyType.SESSION_TIMEOUT: self.evaluate_session,
            PolicyType.PASSWORD_EXPIRY: self.evaluate_password_expiry,
            PolicyType.APPROVAL_WORKFLOW: self.evaluate_approval_workflow,
        }

    async def evaluate(
        self,
        policy_type: PolicyType,
        config: PolicyConfig,
        request: EvaluationRequest
    ) -> EvaluationResult:
        evaluator = self._evaluators.get(policy_type)
        result = await evaluator(config, request) if evaluator else EvaluationResult()
        if result.violated or not config.custom_rules:
            return result

        custom = evaluate_custom_rules(config.custom_rules, request)
        custom.requires_approval = custom.requires_approval or result.requires_approval
        custom.warnings = result.warnings + custom.warnings
        return custom

    async def evaluate_mfa(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        user = await self.identity.get_user(request.user_id)
        if user is None or user.mfa_enrolled:
            return EvaluationResult()

        grace = timedelta(days=config.grace_period_days or 0)
        created_at = parse_timestamp(user.created_at) or request.now
        if request.now - created_at >= grace:
            return EvaluationResult(
                violated=True,
                details={"reason": "MFA not enabled after grace period", "grace_period_expired": True},
            )
        return EvaluationResult()

    async def evaluate_device_trust(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        if not config.require_trusted_device:
            return EvaluationResult()

        device_id = request.context.get("device_id")
        if not device_id:
            return EvaluationResult(violated=True, details={"reason": "No device ID provided"})

        if not await self.devices.is_trusted(device_id, request.user_id):
            return EvaluationResult(
                violated=True,
                details={"reason": "Device is not trusted", "device_id": device_id},
            )
        return EvaluationResult()

    async def evaluate_export(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        if request.action != "export":
            return EvaluationResult()

        export_format = request.context.get("format")
        item_count = request.context.get("item_count") or 0

        if config.allowed_formats and export_format not in config.allowed_formats:
            return EvaluationResult(
                violated=True,
                details={
                    "reason": "Export format not allowed",
                    "format": export_format,
                    "allowed_formats": config.allowed_formats,
                },
            )
        if config.max_export_items and item_count > config.max_export_items:
            return EvaluationResult(
                violated=True,
                details={
                    "reason": "Export item count exceeds limit",
                    "item_count": item_count,
                    "max_allowed": config.max_export_items,
                },
            )
        return EvaluationResult(requires_approval=config.require_approval)

    async def evaluate_sharing(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        if request.action not in SHARE_ACTIONS:
            return EvaluationResult()

        if not config.allow_sharing:
            return EvaluationResult(violated=True, details={"reason": "Sharing is disabled for this team"})

        recipients = request.context.get("recipients") or []
        count = request.context.get("recipient_count", len(recipients))
        if config.max_share_recipients and count > config.max_share_recipients:
            return EvaluationResult(
                violated=True,
                details={
                    "reason": "Too many share recipients",
                    "recipient_count": count,
                    "max_allowed": config.max_share_recipients,
                },
            )
        return EvaluationResult(requires_approval=config.require_approval)

    async def evaluate_ip(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        ip_address = request.context.get("ip_address")
        reason = ip_rule_violation(config, ip_address)
        if reason:
            return EvaluationResult(violated=True, details={"reason": reason, "ip_address": ip_address})
        return EvaluationResult()

    async def evaluate_geolocation(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        country = request.context.get("country")
        reason = country_rule_violation(config, country)
        if reason:
            return EvaluationResult(violated=True, details={"reason": reason, "country": country})
        return EvaluationResult()

    async def evaluate_session(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        started_at = parse_timestamp(request.context.get("session_started_at"))
        if config.timeout_minutes and started_at:
            if request.now - started_at > timedelta(minutes=config.timeout_minutes):
                return EvaluationResult(
                    violated=True,
                    details={"reason": "Session timed out", "timeout_minutes": config.timeout_minutes},
                )

        if config.max_concurrent_sessions:
            sessions = await self.sessions.get_active_sessions(request.user_id)
            if len(sessions) > config.max_concurrent_sessions:
                return EvaluationResult(
                    violated=True,
                    details={
                        "reason": f"Maximum concurrent sessions ({config.max_concurrent_sessions}) exceeded",
                        "active_sessions": len(sessions),
                    },
                )
        return EvaluationResult()

    async def evaluate_password_expiry(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        changed_at = parse_timestamp(request.context.get("password_changed_at"))
        if not config.expiry_days or changed_at is None:
            return EvaluationResult()

        expires_at = changed_at + timedelta(days=config.expiry_days)
        if request.now >= expires_at:
            return EvaluationResult(
                violated=True,
                details={"reason": "Password expired", "expired_at": expires_at.isoformat()},
            )
        if config.warning_days and expires_at - request.now <= timedelta(days=config.warning_days):
            days_left = (expires_at - request.now).days
            return EvaluationResult(warnings=[f"Password expires in {days_left} days"])
        return EvaluationResult()

    async def evaluate_approval_workflow(self, config: PolicyConfig, request: EvaluationRequest) -> EvaluationResult:
        if request.action in config.approval_actions:
            return EvaluationResult(requires_approval=True, details={"action": request.action})
        return EvaluationResult()
