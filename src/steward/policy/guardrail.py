"""
Guardrail evaluation for Steward.

The guardrail chain decides, for one ActionRequest under one Policy,
whether the action may run (allow), must wait for a human (needs_approval)
or is refused outright (deny).

Design Principles:
    - Ordered: rules run in a fixed order and the first match wins
    - Total: every well-formed request gets exactly one decision
    - Pure: no I/O, no clock, no mutation; same inputs give the same decision
    - Explainable: every non-allow decision carries a human-readable reason

Rule order:
    1. authority      - authority not granted            -> deny
    2. read_only      - mode is read_only                -> needs_approval
    3. restricted     - writes to restricted fields      -> needs_approval
    4. amount         - amount above the auto limit      -> needs_approval
    5. email_domain   - recipient domain not trusted     -> needs_approval
    6. propose        - mode is propose                  -> needs_approval
    7. auto_safe      - action not allow-listed, or risk above low
    8. allow

Thresholds (rules 3 to 5) apply under every mode, including auto_all.
A request field that is absent means the rule for it does not apply.
"""

import logging

from steward.errors import ApprovalRequiredError, AuthorityDeniedError, PolicyDeniedError
from steward.schema import (
    ActionRequest,
    DecisionKind,
    GuardrailDecision,
    Policy,
    PolicyMode,
    Risk,
    format_number,
)

logger = logging.getLogger(__name__)

# Rule names reported on GuardrailDecision.rule
RULE_AUTHORITY = "authority"
RULE_READ_ONLY = "read_only"
RULE_RESTRICTED_FIELDS = "restricted_fields"
RULE_AMOUNT = "amount"
RULE_EMAIL_DOMAIN = "email_domain"
RULE_PROPOSE = "propose"
RULE_AUTO_SAFE_ACTION = "auto_safe_action"
RULE_AUTO_SAFE_RISK = "auto_safe_risk"
RULE_ALLOW = "allow"


def evaluate(policy: Policy, request: ActionRequest) -> GuardrailDecision:
    """
    Evaluate an action request against a policy.

    Args:
        policy: The tenant's policy snapshot
        request: The action being requested

    Returns:
        GuardrailDecision with the first matching rule's outcome
    """
    # Authority is absolute: no mode can bypass it
    if request.authority not in policy.authorities:
        return GuardrailDecision.deny(
            f"Authority {request.authority} not granted.",
            rule=RULE_AUTHORITY,
        )

    if policy.mode is PolicyMode.READ_ONLY:
        return GuardrailDecision.needs_approval("Policy read_only.", rule=RULE_READ_ONLY)

    if request.table and request.fields:
        restricted = policy.restricted_fields_for(request.table)
        blocked = [name for name in request.fields if name in restricted]
        if blocked:
            return GuardrailDecision.needs_approval(
                f"Restricted fields: {','.join(blocked)}.",
                rule=RULE_RESTRICTED_FIELDS,
            )

    limit = policy.approval_required_over_amount
    if request.amount is not None and request.amount > limit:
        return GuardrailDecision.needs_approval(
            f"Amount {format_number(request.amount)} exceeds auto limit {format_number(limit)}.",
            rule=RULE_AMOUNT,
        )

    if request.email_domain and request.email_domain not in policy.email_domain_trustlist:
        return GuardrailDecision.needs_approval(
            f"Email domain {request.email_domain} not in trustlist.",
            rule=RULE_EMAIL_DOMAIN,
        )

    if policy.mode is PolicyMode.PROPOSE:
        return GuardrailDecision.needs_approval("Propose mode.", rule=RULE_PROPOSE)

    if policy.mode is PolicyMode.AUTO_SAFE:
        if request.action and request.action not in policy.auto_safe_actions:
            return GuardrailDecision.needs_approval(
                f"Action {request.action} not in auto_safe list.",
                rule=RULE_AUTO_SAFE_ACTION,
            )
        if request.risk is not None and request.risk is not Risk.LOW:
            return GuardrailDecision.needs_approval(
                f"Risk {request.risk.value} requires approval.",
                rule=RULE_AUTO_SAFE_RISK,
            )

    return GuardrailDecision.allow(rule=RULE_ALLOW)


def enforce(
    policy: Policy,
    request: ActionRequest,
    tenant_id: str | None = None,
    actor_id: str | None = None,
) -> GuardrailDecision:
    """
    Evaluate a request and log the decision.

    Same result as evaluate(); additionally emits one structured log line
    so guardrail checks show up in service logs.
    """
    decision = evaluate(policy, request)
    logger.info(
        "Guardrail check: %s on %s - %s",
        request.authority,
        request.table or "unknown",
        decision.kind.value,
        extra={
            "tenant_id": tenant_id,
            "actor_id": actor_id,
            "authority": request.authority,
            "table": request.table,
            "decision": decision.kind.value,
            "reason": decision.reason,
            "rule": decision.rule,
        },
    )
    return decision


class GuardrailEvaluator:
    """
    Guardrail evaluator bound to one policy snapshot.

    Usage:
        evaluator = GuardrailEvaluator(policy)
        decision = evaluator.evaluate(ActionRequest(authority="SEND_INVOICE", amount=500))
        if decision.requires_approval:
            ...

    Attributes:
        policy: The immutable policy this evaluator enforces
    """

    def __init__(self, policy: Policy) -> None:
        self.policy = policy

    def evaluate(self, request: ActionRequest) -> GuardrailDecision:
        return evaluate(self.policy, request)

    def enforce(
        self,
        request: ActionRequest,
        tenant_id: str | None = None,
        actor_id: str | None = None,
    ) -> GuardrailDecision:
        return enforce(self.policy, request, tenant_id, actor_id)

    def require(self, request: ActionRequest) -> None:
        require(self.policy, request)

    def explain(self, request: ActionRequest) -> str:
        """One-line rendering of the decision, for CLI output and logs."""
        decision = self.evaluate(request)
        if decision.kind is DecisionKind.ALLOW:
            return f"allow ({decision.rule})"
        return f"{decision.kind.value} ({decision.rule}): {decision.reason}"


# =============================================================================
# Authority helpers for tool bodies
# =============================================================================


def has_authority(policy: Policy, authority: str) -> bool:
    """Whether the policy grants an authority."""
    return authority in policy.authorities


def require_authority(policy: Policy, authority: str) -> None:
    """
    Fail if the policy does not grant an authority.

    Raises:
        AuthorityDeniedError: If the authority is not granted
    """
    if not has_authority(policy, authority):
        raise AuthorityDeniedError(authority=authority)


def require(policy: Policy, request: ActionRequest) -> None:
    """
    Raise unless the guardrails allow a request outright.

    For tool bodies that check a finer-grained action than the one they
    were dispatched for (e.g. one line of a batch). The dispatcher reports
    either error as a denial by the tool.

    Raises:
        PolicyDeniedError: If the decision is deny
        ApprovalRequiredError: If the decision is needs_approval
    """
    decision = evaluate(policy, request)
    if decision.is_denied:
        raise PolicyDeniedError(reason=decision.reason or "", rule=decision.rule)
    if decision.requires_approval:
        raise ApprovalRequiredError(reason=decision.reason or "")
