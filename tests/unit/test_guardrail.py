"""
Unit tests for the guardrail chain.

Tests cover:
- Each rule and its exact reason text
- Rule precedence (authority first, read_only second, thresholds before modes)
- Missing optional request fields
- Determinism and authority precedence across modes
- enforce() logging and the GuardrailEvaluator wrapper
- has_authority / require_authority and the raising require()
"""

import logging

import pytest

from steward.errors import ApprovalRequiredError, AuthorityDeniedError, PolicyDeniedError
from steward.policy.guardrail import (
    RULE_ALLOW,
    RULE_AMOUNT,
    RULE_AUTHORITY,
    RULE_AUTO_SAFE_ACTION,
    RULE_AUTO_SAFE_RISK,
    RULE_EMAIL_DOMAIN,
    RULE_PROPOSE,
    RULE_READ_ONLY,
    RULE_RESTRICTED_FIELDS,
    GuardrailEvaluator,
    enforce,
    evaluate,
    has_authority,
    require,
    require_authority,
)
from steward.schema import ActionRequest, DecisionKind, Policy, PolicyMode, Risk


def make_policy(**kwargs) -> Policy:
    kwargs.setdefault("authorities", frozenset({"SEND_INVOICE", "CREATE_LEAD"}))
    return Policy(**kwargs)


# =============================================================================
# Scenarios
# =============================================================================


class TestScenarios:
    """Reference scenarios for the rule chain."""

    def test_missing_authority_is_denied(self) -> None:
        """An authority the policy lacks is denied with its name in the reason."""
        policy = Policy(authorities=frozenset({"READ_CLIENTS"}), mode=PolicyMode.AUTO_ALL)
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE"))

        assert decision.kind is DecisionKind.DENY
        assert decision.reason == "Authority SEND_INVOICE not granted."
        assert decision.rule == RULE_AUTHORITY

    def test_auto_safe_low_risk_listed_action_allowed(self) -> None:
        """auto_safe runs an allow-listed low-risk action."""
        policy = make_policy(
            mode=PolicyMode.AUTO_SAFE,
            auto_safe_actions=frozenset({"create_lead"}),
        )
        request = ActionRequest(authority="CREATE_LEAD", action="create_lead", risk=Risk.LOW)

        decision = evaluate(policy, request)

        assert decision.is_allowed
        assert decision.reason is None
        assert decision.rule == RULE_ALLOW

    def test_auto_safe_high_risk_needs_approval(self) -> None:
        """auto_safe asks for approval when risk is above low."""
        policy = make_policy(
            mode=PolicyMode.AUTO_SAFE,
            auto_safe_actions=frozenset({"create_lead"}),
        )
        request = ActionRequest(authority="CREATE_LEAD", action="create_lead", risk=Risk.HIGH)

        decision = evaluate(policy, request)

        assert decision.requires_approval
        assert decision.reason == "Risk high requires approval."
        assert decision.rule == RULE_AUTO_SAFE_RISK

    def test_amount_threshold_applies_under_auto_all(self) -> None:
        """The amount limit still applies in auto_all mode."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL, approval_required_over_amount=100)

        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", amount=500))

        assert decision.requires_approval
        assert decision.reason == "Amount 500 exceeds auto limit 100."
        assert decision.rule == RULE_AMOUNT


# =============================================================================
# Individual rules
# =============================================================================


class TestRules:
    """Tests for each rule in isolation."""

    def test_read_only_needs_approval(self) -> None:
        """read_only routes every granted action to approval."""
        decision = evaluate(make_policy(), ActionRequest(authority="SEND_INVOICE"))
        assert decision.requires_approval
        assert decision.reason == "Policy read_only."
        assert decision.rule == RULE_READ_ONLY

    def test_restricted_fields_listed_in_request_order(self) -> None:
        """Restricted fields are reported comma-separated in request order."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            restricted_fields={"crm_leads": frozenset({"priority", "email"})},
        )
        request = ActionRequest(
            authority="CREATE_LEAD",
            table="crm_leads",
            fields={"email": "a@b.com", "first_name": "Ana", "priority": "high"},
        )

        decision = evaluate(policy, request)

        assert decision.reason == "Restricted fields: email,priority."
        assert decision.rule == RULE_RESTRICTED_FIELDS

    def test_restricted_fields_other_table_ignored(self) -> None:
        """Restrictions only apply to their own table."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            restricted_fields={"invoices": frozenset({"amount"})},
        )
        request = ActionRequest(authority="CREATE_LEAD", table="crm_leads", fields={"amount": 1})
        assert evaluate(policy, request).is_allowed

    def test_restricted_fields_need_both_table_and_fields(self) -> None:
        """Fields without a table do not trigger the restriction."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            restricted_fields={"crm_leads": frozenset({"email"})},
        )
        request = ActionRequest(authority="CREATE_LEAD", fields={"email": "x@y.com"})
        assert evaluate(policy, request).is_allowed

    def test_amount_equal_to_limit_allowed(self) -> None:
        """Only amounts strictly above the limit need approval."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL, approval_required_over_amount=100)
        assert evaluate(policy, ActionRequest(authority="SEND_INVOICE", amount=100)).is_allowed

    def test_fractional_amount_rendered_as_is(self) -> None:
        """Non-integral amounts keep their decimals in the reason."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL, approval_required_over_amount=99.5)
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", amount=120.25))
        assert decision.reason == "Amount 120.25 exceeds auto limit 99.5."

    def test_zero_limit_requires_approval_for_any_amount(self) -> None:
        """The default limit of 0 puts every positive amount behind approval."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL)
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", amount=1))
        assert decision.reason == "Amount 1 exceeds auto limit 0."

    def test_untrusted_email_domain(self) -> None:
        """Email to a domain outside the trustlist needs approval."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            email_domain_trustlist=frozenset({"example.com"}),
        )
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", email_domain="evil.io"))
        assert decision.reason == "Email domain evil.io not in trustlist."
        assert decision.rule == RULE_EMAIL_DOMAIN

    def test_trusted_email_domain_case_insensitive(self) -> None:
        """Domains match regardless of case."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            email_domain_trustlist=["Example.COM"],
        )
        request = ActionRequest(authority="SEND_INVOICE", email_domain="EXAMPLE.com")
        assert evaluate(policy, request).is_allowed

    def test_propose_mode(self) -> None:
        """propose mode asks for approval once thresholds pass."""
        decision = evaluate(
            make_policy(mode=PolicyMode.PROPOSE),
            ActionRequest(authority="SEND_INVOICE"),
        )
        assert decision.reason == "Propose mode."
        assert decision.rule == RULE_PROPOSE

    def test_auto_safe_unlisted_action(self) -> None:
        """auto_safe asks for approval for actions not on the list."""
        policy = make_policy(mode=PolicyMode.AUTO_SAFE, auto_safe_actions=frozenset({"create_lead"}))
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", action="send_invoice"))
        assert decision.reason == "Action send_invoice not in auto_safe list."
        assert decision.rule == RULE_AUTO_SAFE_ACTION

    def test_auto_safe_action_checked_before_risk(self) -> None:
        """The action check wins over the risk check."""
        policy = make_policy(mode=PolicyMode.AUTO_SAFE)
        request = ActionRequest(authority="SEND_INVOICE", action="send_invoice", risk=Risk.HIGH)
        assert evaluate(policy, request).rule == RULE_AUTO_SAFE_ACTION

    def test_auto_safe_without_action_or_risk_allowed(self) -> None:
        """auto_safe allows a request that names neither action nor risk."""
        policy = make_policy(mode=PolicyMode.AUTO_SAFE)
        assert evaluate(policy, ActionRequest(authority="SEND_INVOICE")).is_allowed

    def test_auto_all_ignores_risk_and_action(self) -> None:
        """auto_all does not look at action or risk."""
        request = ActionRequest(authority="SEND_INVOICE", action="anything", risk=Risk.HIGH)
        assert evaluate(make_policy(mode=PolicyMode.AUTO_ALL), request).is_allowed


# =============================================================================
# Precedence and properties
# =============================================================================


class TestPrecedence:
    """Tests for rule ordering."""

    @pytest.mark.parametrize("mode", list(PolicyMode))
    def test_authority_beats_every_mode(self, mode: PolicyMode) -> None:
        """A missing authority is denied under every mode."""
        policy = Policy(
            mode=mode,
            authorities=frozenset({"READ_CLIENTS"}),
            approval_required_over_amount=1_000_000,
            auto_safe_actions=frozenset({"send_invoice"}),
        )
        request = ActionRequest(
            authority="SEND_INVOICE",
            action="send_invoice",
            amount=1,
            risk=Risk.LOW,
        )
        assert evaluate(policy, request).is_denied

    def test_read_only_beats_thresholds(self) -> None:
        """read_only is reported even when a threshold would also match."""
        policy = make_policy(mode=PolicyMode.READ_ONLY)
        decision = evaluate(policy, ActionRequest(authority="SEND_INVOICE", amount=10_000))
        assert decision.rule == RULE_READ_ONLY

    def test_restricted_fields_beat_amount(self) -> None:
        """Restricted fields are checked before the amount."""
        policy = make_policy(
            mode=PolicyMode.AUTO_ALL,
            restricted_fields={"invoices": frozenset({"total"})},
        )
        request = ActionRequest(
            authority="SEND_INVOICE",
            table="invoices",
            fields={"total": 500},
            amount=500,
        )
        assert evaluate(policy, request).rule == RULE_RESTRICTED_FIELDS

    def test_amount_beats_email_domain(self) -> None:
        """The amount is checked before the email domain."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL)
        request = ActionRequest(authority="SEND_INVOICE", amount=5, email_domain="evil.io")
        assert evaluate(policy, request).rule == RULE_AMOUNT

    def test_thresholds_beat_propose(self) -> None:
        """Threshold reasons are reported in propose mode."""
        policy = make_policy(mode=PolicyMode.PROPOSE)
        request = ActionRequest(authority="SEND_INVOICE", email_domain="evil.io")
        assert evaluate(policy, request).rule == RULE_EMAIL_DOMAIN

    @pytest.mark.parametrize("mode", [PolicyMode.PROPOSE, PolicyMode.AUTO_SAFE, PolicyMode.AUTO_ALL])
    def test_threshold_enforced_outside_read_only(self, mode: PolicyMode) -> None:
        """Amounts over the limit need approval in every non-read_only mode."""
        policy = make_policy(
            mode=mode,
            approval_required_over_amount=100,
            auto_safe_actions=frozenset({"send_invoice"}),
        )
        request = ActionRequest(authority="SEND_INVOICE", action="send_invoice", amount=101)
        decision = evaluate(policy, request)
        assert decision.requires_approval
        assert decision.rule == RULE_AMOUNT

    def test_deterministic(self) -> None:
        """The same inputs always give the same decision."""
        policy = make_policy(mode=PolicyMode.AUTO_SAFE)
        request = ActionRequest(authority="CREATE_LEAD", action="create_lead", risk=Risk.MED)
        decisions = {evaluate(policy, request) for _ in range(20)}
        assert len(decisions) == 1


# =============================================================================
# enforce / evaluator / helpers
# =============================================================================


class TestEnforce:
    """Tests for enforce() and GuardrailEvaluator."""

    def test_enforce_matches_evaluate(self) -> None:
        """enforce returns exactly what evaluate returns."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL, approval_required_over_amount=100)
        request = ActionRequest(authority="SEND_INVOICE", table="invoices", amount=500)
        assert enforce(policy, request, "studio-1", "agent") == evaluate(policy, request)

    def test_enforce_logs_decision(self, caplog: pytest.LogCaptureFixture) -> None:
        """enforce writes one log line with the decision."""
        policy = make_policy(mode=PolicyMode.AUTO_ALL)
        request = ActionRequest(authority="SEND_INVOICE", table="invoices")

        with caplog.at_level(logging.INFO, logger="steward.policy.guardrail"):
            enforce(policy, request, "studio-1", "agent")

        records = [r for r in caplog.records if r.name == "steward.policy.guardrail"]
        assert len(records) == 1
        assert records[0].getMessage() == "Guardrail check: SEND_INVOICE on invoices - allow"
        assert records[0].tenant_id == "studio-1"
        assert records[0].decision == "allow"

    def test_evaluator_wraps_policy(self) -> None:
        """GuardrailEvaluator evaluates against its bound policy."""
        evaluator = GuardrailEvaluator(make_policy(mode=PolicyMode.PROPOSE))
        assert evaluator.evaluate(ActionRequest(authority="SEND_INVOICE")).rule == RULE_PROPOSE

    def test_explain(self) -> None:
        """explain renders the decision on one line."""
        evaluator = GuardrailEvaluator(make_policy(mode=PolicyMode.AUTO_ALL))
        assert evaluator.explain(ActionRequest(authority="SEND_INVOICE")) == "allow (allow)"
        assert (
            evaluator.explain(ActionRequest(authority="DELETE_CLIENT"))
            == "deny (authority): Authority DELETE_CLIENT not granted."
        )


class TestAuthorityHelpers:
    """Tests for has_authority and require_authority."""

    def test_has_authority(self) -> None:
        policy = make_policy()
        assert has_authority(policy, "SEND_INVOICE")
        assert not has_authority(policy, "DELETE_CLIENT")

    def test_require_authority_passes(self) -> None:
        require_authority(make_policy(), "CREATE_LEAD")

    def test_require_authority_raises(self) -> None:
        """A missing authority raises with the standard reason."""
        with pytest.raises(AuthorityDeniedError) as exc_info:
            require_authority(make_policy(), "DELETE_CLIENT")

        assert exc_info.value.message == "Authority DELETE_CLIENT not granted."
        assert exc_info.value.authority == "DELETE_CLIENT"


class TestRequire:
    """Tests for the raising form of the guardrail chain."""

    def test_allowed_request_passes(self) -> None:
        require(make_policy(mode=PolicyMode.AUTO_ALL), ActionRequest(authority="SEND_INVOICE", amount=10))

    def test_deny_raises_policy_denied(self) -> None:
        with pytest.raises(PolicyDeniedError) as exc_info:
            require(make_policy(mode=PolicyMode.AUTO_ALL), ActionRequest(authority="DELETE_CLIENT"))

        assert exc_info.value.reason == "Authority DELETE_CLIENT not granted."
        assert exc_info.value.rule == RULE_AUTHORITY

    def test_needs_approval_raises(self) -> None:
        policy = make_policy(mode=PolicyMode.AUTO_ALL, approval_required_over_amount=100)
        with pytest.raises(ApprovalRequiredError) as exc_info:
            GuardrailEvaluator(policy).require(ActionRequest(authority="SEND_INVOICE", amount=500))

        assert exc_info.value.reason == "Amount 500 exceeds auto limit 100."
