"""
Integration tests for the Governor.

Tests cover:
- Deny / approval_required / allow outcomes end to end
- Tool denials and failures surfaced as responses
- Proposal approval, rejection and expiry
- Exactly-once execution of approved proposals
- One audit record per terminal event
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from steward.config import StewardConfig
from steward.errors import ProposalExpiredError, ProposalNotFoundError, ProposalStateError
from steward.governor import Governor, Session
from steward.schema import (
    ActionRequest,
    AuditKind,
    Policy,
    PolicyMode,
    ProposalStatus,
    ResponseStatus,
    Risk,
    ToolCallRequest,
)
from steward.store import StewardDB
from steward.tools import ToolRegistry

TENANT = "studio-1"
ACTOR = "agent-1"
APPROVER = "owner-1"

INVOICE_500 = {"client_email": "billing@acme.test", "amount": 500}
INVOICE_80 = {"client_email": "billing@acme.test", "amount": 80}
LEAD = {"first_name": "Ana", "last_name": "Lee", "email": "ana@example.com"}


def call(tool_name: str, raw_args: str | dict | None = None) -> ToolCallRequest:
    return ToolCallRequest(tool_name=tool_name, raw_args=raw_args)


# =============================================================================
# Governed execution
# =============================================================================


class TestExecute:
    """Tests for the three guardrail outcomes."""

    def test_missing_authority_denied(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        """Scenario: a lead without CREATE_LEAD is denied and audited."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("create_lead", LEAD))

        response = asyncio.run(scenario())

        assert response.status is ResponseStatus.DENIED
        assert response.message == "Authority CREATE_LEAD not granted."
        assert response.decision.rule == "authority"

        records = db.list_audit(TENANT)
        assert [r.kind for r in records] == [AuditKind.DENIAL]
        assert records[0].payload["source"] == "guardrail"
        assert records[0].target_table == "crm_leads"

    def test_amount_over_limit_proposed(
        self,
        make_governor: Callable[..., Governor],
        db: StewardDB,
        registry: ToolRegistry,
    ) -> None:
        """Scenario: a 500 invoice against a 100 limit becomes a proposal."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                response = await governor.execute(session, call("create_invoice", INVOICE_500))
                return response, session

        response, session = asyncio.run(scenario())

        assert response.status is ResponseStatus.APPROVAL_REQUIRED
        assert response.message == (
            "create_invoice requires approval: Amount 500 exceeds auto limit 100."
        )
        [proposal] = response.proposals
        assert proposal.tool == "create_invoice"
        assert proposal.args == INVOICE_500
        assert proposal.reason == "Amount 500 exceeds auto limit 100."
        assert proposal.risk is Risk.HIGH
        assert proposal.summary == "Create invoice for billing@acme.test"
        assert proposal.preview == "Invoice total 500 GBP"
        assert proposal.request.amount == 500
        assert session.pending == [proposal]

        # Nothing ran
        assert registry.get("create_invoice").created == []

        stored = db.get_proposal(TENANT, proposal.id)
        assert stored.status is ProposalStatus.PENDING

        records = db.list_audit(TENANT)
        assert [r.kind for r in records] == [AuditKind.PROPOSAL]
        assert records[0].amount == 500
        assert records[0].payload["proposal"]["id"] == proposal.id

    def test_allowed_action_runs(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("create_invoice", INVOICE_80))

        response = asyncio.run(scenario())

        assert response.ok
        assert response.message == "create_invoice completed."
        assert response.data["amount"] == 80
        assert response.data["tenant_id"] == TENANT
        assert response.decision.is_allowed

        [record] = db.list_audit(TENANT)
        assert record.kind is AuditKind.EXECUTION
        assert record.amount == 80
        assert record.payload["after"]["amount"] == 80

    def test_auto_safe_tenant(self, make_governor: Callable[..., Governor]) -> None:
        """auto_safe runs low-risk allowlisted actions and proposes the rest."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session("studio-2", ACTOR)
                return await governor.execute_many(session, [
                    call("create_lead", LEAD),
                    call("create_lead", {**LEAD, "risk": "high"}),
                    call("create_lead", {**LEAD, "email": "bob@other.test"}),
                ])

        safe, risky, untrusted = asyncio.run(scenario())

        assert safe.ok
        assert risky.status is ResponseStatus.APPROVAL_REQUIRED
        assert risky.decision.reason == "Risk high requires approval."
        assert untrusted.status is ResponseStatus.APPROVAL_REQUIRED
        assert untrusted.decision.reason == "Email domain other.test not in trustlist."

    def test_explicit_request_evaluated(self, make_governor: Callable[..., Governor]) -> None:
        """A caller-supplied ActionRequest replaces the tool's own description."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(
                    session,
                    call("list_leads"),
                    request=ActionRequest(authority="SEND_INVOICE", amount=250),
                )

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.APPROVAL_REQUIRED
        assert response.proposals[0].request.authority == "SEND_INVOICE"

    def test_ungoverned_tool_denied(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("ungoverned"))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.DENIED
        assert response.message == "Tool ungoverned declares no authority."
        assert [r.kind for r in db.list_audit(TENANT)] == [AuditKind.DENIAL]

    def test_unknown_tenant_gets_safe_default(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session("studio-unknown", ACTOR)
                read = await governor.execute(session, call("list_leads"))
                write = await governor.execute(session, call("create_invoice", INVOICE_80))
                return session, read, write

        session, read, write = asyncio.run(scenario())
        assert session.policy.mode is PolicyMode.READ_ONLY
        assert read.status is ResponseStatus.APPROVAL_REQUIRED
        assert read.decision.reason == "Policy read_only."
        assert write.status is ResponseStatus.DENIED
        assert write.message == "Authority CREATE_INVOICE not granted."

    def test_open_session_requires_ids(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                await governor.open_session("", ACTOR)

        with pytest.raises(ValueError):
            asyncio.run(scenario())


# =============================================================================
# Tool denials and failures
# =============================================================================


class TestToolOutcomes:
    """Tests for denials and failures raised while running a tool."""

    def test_business_denial(self, make_governor: Callable[..., Governor], db: StewardDB) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(
                    session, call("delete_client", {"client_id": 7, "has_open_invoices": True})
                )

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.DENIED
        assert response.message == "Client has open invoices."
        assert response.result.denied

        [record] = db.list_audit(TENANT)
        assert record.kind is AuditKind.DENIAL
        assert record.payload["source"] == "tool"

    def test_authority_checked_inside_tool(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("delete_client", {"client_id": 7}))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.DENIED
        assert response.message == "Authority DELETE_CLIENT not granted."

    def test_exception_is_failure(self, make_governor: Callable[..., Governor], db: StewardDB) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("explode"))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.ERROR
        assert response.message == "explode failed: database unavailable"

        [record] = db.list_audit(TENANT)
        assert record.kind is AuditKind.FAILURE
        assert record.payload["error"] == "database unavailable"
        assert 1 <= len(record.payload["stack"]) <= 3

    def test_bad_json_is_failure(self, make_governor: Callable[..., Governor], db: StewardDB) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("create_invoice", '{"amount": 5'))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.ERROR
        assert response.message == "create_invoice failed: bad_json_args"

        [record] = db.list_audit(TENANT)
        assert record.kind is AuditKind.FAILURE
        assert record.payload["args"] == '{"amount": 5'

    def test_deeply_nested_json_is_failure(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("create_invoice", "[" * 100_000))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.ERROR
        assert response.message == "create_invoice failed: bad_json_args"
        assert [r.kind for r in db.list_audit(TENANT)] == [AuditKind.FAILURE]

    def test_unknown_tool(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("nonexistent_tool", "{}"))

        response = asyncio.run(scenario())
        assert response.message == "nonexistent_tool failed: unknown_tool"

    def test_timeout(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("slow"))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.ERROR
        assert response.message == "slow failed: slow timed out after 0.05s"

    def test_execute_many_isolates_failures(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute_many(session, [
                    call("list_leads"),
                    call("explode"),
                    call("create_invoice", INVOICE_500),
                    call("create_invoice", "{bad"),
                ])

        statuses = [r.status for r in asyncio.run(scenario())]
        assert statuses == [
            ResponseStatus.SUCCESS,
            ResponseStatus.ERROR,
            ResponseStatus.APPROVAL_REQUIRED,
            ResponseStatus.ERROR,
        ]


# =============================================================================
# Proposal resolution
# =============================================================================


class TestProposalResolution:
    """Tests for approve, reject and expiry."""

    def test_approve_runs_proposal(
        self,
        make_governor: Callable[..., Governor],
        db: StewardDB,
        registry: ToolRegistry,
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                agent = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(agent, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id

                owner = await governor.open_session(TENANT, APPROVER)
                assert [p.id for p in await governor.pending(owner)] == [proposal_id]
                response = await governor.approve(owner, proposal_id)
                return proposal_id, response, owner

        proposal_id, response, owner = asyncio.run(scenario())

        assert response.ok
        assert response.message == "create_invoice completed."
        assert response.data["amount"] == 500
        assert owner.pending == []
        assert len(registry.get("create_invoice").created) == 1

        stored = db.get_proposal(TENANT, proposal_id)
        assert stored.status is ProposalStatus.EXECUTED
        assert stored.resolved_by == APPROVER

        records = db.list_audit(TENANT)
        assert [r.kind for r in records] == [AuditKind.PROPOSAL, AuditKind.EXECUTION]
        assert records[1].actor_id == APPROVER
        assert records[1].payload["proposal_id"] == proposal_id

    def test_approve_twice(
        self, make_governor: Callable[..., Governor], registry: ToolRegistry
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                await governor.approve(session, proposal_id)
                with pytest.raises(ProposalStateError):
                    await governor.approve(session, proposal_id)

        asyncio.run(scenario())
        assert len(registry.get("create_invoice").created) == 1

    def test_concurrent_approvals_run_once(
        self, make_governor: Callable[..., Governor], registry: ToolRegistry
    ) -> None:
        """Two approvers racing on one proposal: exactly one execution."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                first = await governor.open_session(TENANT, "owner-1")
                second = await governor.open_session(TENANT, "owner-2")
                return await asyncio.gather(
                    governor.approve(first, proposal_id),
                    governor.approve(second, proposal_id),
                    return_exceptions=True,
                )

        outcomes = asyncio.run(scenario())

        successes = [o for o in outcomes if not isinstance(o, BaseException)]
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(successes) == 1
        assert successes[0].ok
        assert len(errors) == 1
        assert isinstance(errors[0], ProposalStateError)
        assert len(registry.get("create_invoice").created) == 1

    def test_approval_reevaluates_policy(
        self,
        make_governor: Callable[..., Governor],
        db: StewardDB,
        registry: ToolRegistry,
    ) -> None:
        """A policy that no longer grants the authority rejects the proposal."""

        async def scenario():
            async with make_governor() as governor:
                agent = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(agent, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                revoked = Session(
                    tenant_id=TENANT,
                    actor_id=APPROVER,
                    policy=Policy(mode=PolicyMode.AUTO_ALL, authorities=frozenset({"READ_CLIENTS"})),
                )
                return proposal_id, await governor.approve(revoked, proposal_id)

        proposal_id, response = asyncio.run(scenario())

        assert response.status is ResponseStatus.DENIED
        assert response.message == "Authority CREATE_INVOICE not granted."
        assert registry.get("create_invoice").created == []

        stored = db.get_proposal(TENANT, proposal_id)
        assert stored.status is ProposalStatus.REJECTED
        assert stored.resolved_by == APPROVER

        denial = db.list_audit(TENANT)[-1]
        assert denial.kind is AuditKind.DENIAL
        assert denial.payload["proposal_id"] == proposal_id
        assert denial.payload["rule"] == "authority"

    def test_reject(self, make_governor: Callable[..., Governor], db: StewardDB) -> None:
        async def scenario():
            async with make_governor() as governor:
                agent = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(agent, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                owner = await governor.open_session(TENANT, APPROVER)
                response = await governor.reject(owner, proposal_id)
                with pytest.raises(ProposalStateError):
                    await governor.approve(owner, proposal_id)
                return proposal_id, response

        proposal_id, response = asyncio.run(scenario())

        assert response.status is ResponseStatus.DENIED
        assert response.message == "Rejected by owner-1."
        assert db.get_proposal(TENANT, proposal_id).status is ProposalStatus.REJECTED

        denial = db.list_audit(TENANT)[-1]
        assert denial.kind is AuditKind.DENIAL
        assert denial.payload["source"] == "human"
        assert denial.payload["proposal_id"] == proposal_id

    def test_reject_with_note(self, make_governor: Callable[..., Governor], db: StewardDB) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                return proposal_id, await governor.reject(session, proposal_id, "Wrong client.")

        proposal_id, response = asyncio.run(scenario())
        assert response.message == "Wrong client."
        assert db.get_proposal(TENANT, proposal_id).note == "Wrong client."

    def test_expired_proposal_cannot_be_approved(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor(ttl_seconds=60) as governor:
                session = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                proposal_id = proposed.proposals[0].id
                later = datetime.now(UTC) + timedelta(minutes=5)
                assert db.expire_proposals(TENANT, now=later) == 1
                with pytest.raises(ProposalExpiredError):
                    await governor.approve(session, proposal_id)
                return proposal_id

        proposal_id = asyncio.run(scenario())
        assert db.get_proposal(TENANT, proposal_id).status is ProposalStatus.EXPIRED
        # Expiry itself writes no audit record
        assert [r.kind for r in db.list_audit(TENANT)] == [AuditKind.PROPOSAL]

    def test_proposal_from_other_tenant_not_found(self, make_governor: Callable[..., Governor]) -> None:
        async def scenario():
            async with make_governor() as governor:
                agent = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(agent, call("create_invoice", INVOICE_500))
                other = await governor.open_session("studio-2", APPROVER)
                with pytest.raises(ProposalNotFoundError):
                    await governor.approve(other, proposed.proposals[0].id)

        asyncio.run(scenario())

    def test_duplicate_request_reuses_proposal(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                first = await governor.execute(session, call("create_invoice", INVOICE_500))
                second = await governor.execute(
                    session, call("create_invoice", '{"amount": 500, "client_email": "billing@acme.test"}')
                )
                return first, second, session

        first, second, session = asyncio.run(scenario())
        proposal_id = first.proposals[0].id
        assert second.proposals[0].id == proposal_id
        assert len(session.pending) == 1

        # Each request still leaves its own record
        original, repeat = db.list_audit(TENANT)
        assert original.kind is AuditKind.PROPOSAL
        assert "deduplicated_into" not in original.payload
        assert repeat.kind is AuditKind.PROPOSAL
        assert repeat.payload["deduplicated_into"] == proposal_id
        assert repeat.payload["proposal"]["id"] == proposal_id

    def test_edits_to_returned_proposal_do_not_change_what_runs(
        self,
        make_governor: Callable[..., Governor],
        registry: ToolRegistry,
    ) -> None:
        """Approval runs the persisted snapshot, not the caller's copy."""

        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                proposal = proposed.proposals[0]
                proposal.args["amount"] = 1
                proposal.args["client_email"] = "mallory@evil.test"
                return await governor.approve(session, proposal.id)

        response = asyncio.run(scenario())

        assert response.ok
        [invoice] = registry.get("create_invoice").created
        assert invoice["amount"] == 500
        assert invoice["client_email"] == "billing@acme.test"

    def test_cancelled_approval_settles_proposal(
        self,
        make_governor: Callable[..., Governor],
        db: StewardDB,
        registry: ToolRegistry,
    ) -> None:
        """An approval cancelled mid-run ends FAILED with a failure record."""

        async def scenario():
            async with make_governor() as governor:
                agent = await governor.open_session(TENANT, ACTOR)
                proposed = await governor.execute(
                    agent,
                    call("hang"),
                    request=ActionRequest(authority="SEND_INVOICE", amount=500),
                )
                proposal_id = proposed.proposals[0].id

                owner = await governor.open_session(TENANT, APPROVER)
                task = asyncio.create_task(governor.approve(owner, proposal_id))
                for _ in range(200):
                    if registry.get("hang").started:
                        break
                    await asyncio.sleep(0.01)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
                return proposal_id

        proposal_id = asyncio.run(scenario())

        assert registry.get("hang").started == 1
        stored = db.get_proposal(TENANT, proposal_id)
        assert stored.status is ProposalStatus.FAILED
        assert stored.resolved_by == APPROVER
        assert stored.note == "hang interrupted: CancelledError"

        records = db.list_audit(TENANT)
        assert [r.kind for r in records] == [AuditKind.PROPOSAL, AuditKind.FAILURE]
        assert records[1].actor_id == APPROVER
        assert records[1].payload["proposal_id"] == proposal_id
        assert records[1].payload["error"] == "hang interrupted: CancelledError"


# =============================================================================
# Audit completeness
# =============================================================================


class TestAuditTrail:
    """Every terminal event leaves exactly one record."""

    def test_one_record_per_event(
        self, make_governor: Callable[..., Governor], db: StewardDB
    ) -> None:
        async def scenario():
            async with make_governor() as governor:
                session = await governor.open_session(TENANT, ACTOR)
                await governor.execute(session, call("create_lead", LEAD))
                proposed = await governor.execute(session, call("create_invoice", INVOICE_500))
                await governor.execute(session, call("create_invoice", INVOICE_80))
                await governor.execute(session, call("explode"))
                await governor.approve(session, proposed.proposals[0].id)

        asyncio.run(scenario())

        kinds = [r.kind for r in db.list_audit(TENANT)]
        assert kinds == [
            AuditKind.DENIAL,
            AuditKind.PROPOSAL,
            AuditKind.EXECUTION,
            AuditKind.FAILURE,
            AuditKind.EXECUTION,
        ]
        assert db.count_audit("studio-2") == 0


class TestFromConfig:
    """Tests for building a governor from configuration."""

    def test_from_config(self, temp_dir: Path, registry: ToolRegistry) -> None:
        config = StewardConfig(db_path=temp_dir / "governed.db")

        async def scenario():
            async with Governor.from_config(config, registry) as governor:
                session = await governor.open_session(TENANT, ACTOR)
                return await governor.execute(session, call("create_invoice", INVOICE_80))

        response = asyncio.run(scenario())
        assert response.status is ResponseStatus.DENIED

        with StewardDB(config.db_path) as db:
            [record] = db.list_audit(TENANT)
        assert record.kind is AuditKind.DENIAL
