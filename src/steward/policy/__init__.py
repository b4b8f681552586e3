"""
Policy module for Steward.

- guardrail: the ordered allow / needs_approval / deny rule chain
- store: fail-safe loading of per-tenant policies
"""

from steward.policy.guardrail import (
    GuardrailEvaluator,
    enforce,
    evaluate,
    has_authority,
    require,
    require_authority,
)
from steward.policy.store import (
    HttpPolicySource,
    MappingPolicySource,
    PolicySource,
    PolicyStore,
    YamlPolicySource,
)

__all__ = [
    "GuardrailEvaluator",
    "HttpPolicySource",
    "MappingPolicySource",
    "PolicySource",
    "PolicyStore",
    "YamlPolicySource",
    "enforce",
    "evaluate",
    "has_authority",
    "require",
    "require_authority",
]
