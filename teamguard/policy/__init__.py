"""
Team security policies: management, evaluation and enforcement.
"""

from .evaluators import EvaluationRequest, EvaluationResult, PolicyEvaluators
from .service import policy_service, PolicyEnforcementService

__all__ = [
    "policy_service",
    "PolicyEnforcementService",
    "PolicyEvaluators",
    "EvaluationRequest",
    "EvaluationResult",
]
