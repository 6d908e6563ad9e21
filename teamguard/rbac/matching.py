"""
Permission matching

Pure functions deciding whether a stored permission applies to a request.
"""

from typing import Any, Dict, List, Optional, Union

from ..models.rbac import Action, ConditionOperator, ConditionType, Resource
from ..models.api import ConditionSpec, PermissionContext, PermissionSpec


def resource_matches(granted: Union[Resource, str], requested: Union[Resource, str]) -> bool:
    """A grant on ``accounts`` covers ``accounts`` and every ``accounts.<child>``"""
    granted = Resource(granted).value
    requested = Resource(requested).value
    return requested == granted or requested.startswith(granted + ".")


def permission_matches(permission: PermissionSpec, resource: Resource, action: Action) -> bool:
    return resource_matches(permission.resource, resource) and action in permission.actions


def _custom_condition_holds(condition: ConditionSpec, custom: Dict[str, Any]) -> bool:
    if not condition.field or condition.field not in custom:
        return False
    value = custom[condition.field]

    if condition.operator in (None, ConditionOperator.EQUALS):
        return value == condition.value
    if condition.operator == ConditionOperator.CONTAINS:
        try:
            return condition.value in value
        except TypeError:
            return False
    if condition.operator == ConditionOperator.IN:
        if not isinstance(condition.value, (list, tuple, set, str)):
            return False
        try:
            return value in condition.value
        except TypeError:
            return False
    return False


def condition_holds(condition: ConditionSpec, user_id: str, context: PermissionContext) -> bool:
    if condition.type == ConditionType.OWN:
        return context.resource_owner_id is not None and context.resource_owner_id == user_id
    if condition.type == ConditionType.TEAM:
        return bool(context.team_id)
    if condition.type == ConditionType.CUSTOM:
        return _custom_condition_holds(condition, context.custom)
    return False


def conditions_hold(
    conditions: List[ConditionSpec],
    user_id: str,
    context: Optional[PermissionContext]
) -> bool:
    """All conditions must hold; a permission without conditions always applies"""
    if not conditions:
        return True
    context = context or PermissionContext()
    return all(condition_holds(c, user_id, context) for c in conditions)
