"""
Governed action execution for Steward.

The Governor is the orchestration layer. It runs every agent tool call
through the governance state machine:

    REQUESTED -> DENIED | NEEDS_APPROVAL | ALLOWED
    NEEDS_APPROVAL -> APPROVED -> EXECUTED | FAILED
                   -> REJECTED
                   -> EXPIRED
    ALLOWED -> EXECUTED | FAILED

Execution Flow:
    1. Parse and validate the call (dispatcher.prepare)
    2. Describe it as an ActionRequest (given, or from the tool)
    3. Evaluate the guardrails against the session's policy snapshot
    4. deny -> audit denial; needs_approval -> persist proposal, audit it;
       allow -> dispatch, audit execution / denial / failure
    5. Return an ActionResponse

Approval re-evaluates the guardrails against the approver's session
before the proposal is claimed, and the claim is atomic, so a proposal
runs at most once. A run interrupted after the claim (for example by task
cancellation) leaves the proposal FAILED with a failure record.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from steward.audit.log import AuditLog
from steward.config import StewardConfig, build_policy_source
from steward.dispatch import PreparedCall, ToolDispatcher
from steward.errors import ProposalStateError, StorageError
from steward.policy.guardrail import RULE_AUTHORITY, GuardrailEvaluator
from steward.policy.store import PolicyStore
from steward.proposals.manager import ProposalManager
from steward.schema import (
    ActionRequest,
    ActionResponse,
    GuardrailDecision,
    Policy,
    Proposal,
    ProposalStatus,
    Risk,
    ToolCallRequest,
    ToolCallResult,
)
from steward.store.db import StewardDB
from steward.tools.base import ToolContext, ToolOutput
from steward.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Risk shown on a proposal when neither the request nor the tool names one
DEFAULT_PROPOSAL_RISK = Risk.MED


@dataclass
class Session:
    """
    One agent session for a tenant and actor.

    The policy is loaded once when the session opens and never changes.
    pending mirrors the proposals this session made or listed.

    Attributes:
        tenant_id: Tenant (studio) identifier
        actor_id: User or agent session identifier
        policy: Immutable policy snapshot
        pending: Proposals awaiting approval, as last seen by this session
    """

    tenant_id: str
    actor_id: str
    policy: Policy
    pending: list[Proposal] = field(default_factory=list)

    @property
    def evaluator(self) -> GuardrailEvaluator:
        return GuardrailEvaluator(self.policy)

    def context(self, call_id: str | None = None) -> ToolContext:
        return ToolContext(
            tenant_id=self.tenant_id,
            actor_id=self.actor_id,
            policy=self.policy,
            call_id=call_id,
        )

    def remember(self, proposal: Proposal) -> None:
        if all(p.id != proposal.id for p in self.pending):
            self.pending.append(proposal)

    def forget(self, proposal_id: str) -> None:
        self.pending = [p for p in self.pending if p.id != proposal_id]


class Governor:
    """
    Runs agent tool calls under policy, proposals and audit.

    Usage:
        governor = Governor(policy_store, dispatcher, proposals, audit)
        session = await governor.open_session("studio-1", "agent")
        response = await governor.execute(
            session,
            ToolCallRequest(tool_name="create_invoice", raw_args='{"amount": 500}'),
        )
        if response.status is ResponseStatus.APPROVAL_REQUIRED:
            ...
        await governor.aclose()

    Attributes:
        policy_store: Loads tenant policies
        dispatcher: Runs tools
        proposals: Persists proposals
        audit: Records terminal events
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        dispatcher: ToolDispatcher,
        proposals: ProposalManager,
        audit: AuditLog,
    ) -> None:
        self.policy_store = policy_store
        self.dispatcher = dispatcher
        self.proposals = proposals
        self.audit = audit
        self._owned_db: StewardDB | None = None

    @classmethod
    def from_config(cls, config: StewardConfig, registry: ToolRegistry) -> "Governor":
        """Build a governor and its collaborators from configuration."""
        db = StewardDB(config.db_path)
        governor = cls(
            policy_store=PolicyStore(
                build_policy_source(config),
                timeout_seconds=config.policy_timeout_seconds,
            ),
            dispatcher=ToolDispatcher(registry, timeout_seconds=config.tool_timeout_seconds),
            proposals=ProposalManager(
                db,
                ttl_seconds=config.proposal_ttl_seconds,
                max_ttl_seconds=config.max_proposal_ttl_seconds,
            ),
            audit=AuditLog(db),
        )
        governor._owned_db = db
        return governor

    async def aclose(self) -> None:
        """Flush the audit log and release owned resources."""
        await self.audit.aclose()
        if self._owned_db is not None:
            self._owned_db.close()
            self._owned_db = None

    async def __aenter__(self) -> "Governor":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def open_session(self, tenant_id: str, actor_id: str) -> Session:
        """
        Start a session: load the tenant's policy snapshot.

        Raises:
            ValueError: If tenant_id or actor_id is empty
        """
        if not tenant_id or not actor_id:
            msg = "tenant_id and actor_id are required"
            raise ValueError(msg)
        policy = await self.policy_store.load(tenant_id)
        logger.debug("Opened session for %s/%s in %s mode", tenant_id, actor_id, policy.mode.value)
        return Session(tenant_id=tenant_id, actor_id=actor_id, policy=policy)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        session: Session,
        call: ToolCallRequest,
        request: ActionRequest | None = None,
    ) -> ActionResponse:
        """
        Run one tool call through the guardrails.

        Args:
            session: The caller's session
            call: Tool name and raw arguments
            request: ActionRequest to evaluate. If None, the tool describes
                the action from its validated arguments.

        Returns:
            ActionResponse with status success, approval_required, denied or error
        """
        prepared = self.dispatcher.prepare(call)
        if isinstance(prepared, ToolCallResult):
            self.audit.failure(
                session.tenant_id,
                session.actor_id,
                call.tool_name,
                prepared,
                request=request,
                target_table=request.table if request else None,
            )
            return ActionResponse.error(
                f"{call.tool_name} failed: {prepared.error}",
                result=prepared,
            )

        if request is None:
            try:
                request = prepared.tool.describe_action(prepared.args)
            except Exception as e:
                logger.warning("describe_action failed for %s: %s", prepared.name, e)
                result = ToolCallResult.failure(
                    str(e) or type(e).__name__,
                    tool=prepared.name,
                    args=prepared.raw_args,
                    call_id=prepared.call_id,
                )
                self.audit.failure(session.tenant_id, session.actor_id, prepared.name, result)
                return ActionResponse.error(f"{prepared.name} failed: {result.error}", result=result)

        if request is None:
            decision = GuardrailDecision.deny(
                f"Tool {prepared.name} declares no authority.",
                rule=RULE_AUTHORITY,
            )
        else:
            decision = session.evaluator.enforce(request, session.tenant_id, session.actor_id)

        if decision.is_denied:
            self.audit.denial(
                session.tenant_id,
                session.actor_id,
                prepared.name,
                decision.reason or "",
                source="guardrail",
                request=request,
                target_table=request.table if request else None,
                decision=decision,
            )
            return ActionResponse.denied(decision.reason or "", decision=decision)

        if decision.requires_approval:
            return await self._propose(session, prepared, request, decision)

        response, _ = await self._run(session, prepared, request, decision)
        return response

    async def execute_many(
        self,
        session: Session,
        calls: Sequence[ToolCallRequest],
    ) -> list[ActionResponse]:
        """
        Run several calls concurrently; one failure never affects the others.

        Responses keep call order.
        """
        outcomes = await asyncio.gather(
            *(self.execute(session, call) for call in calls),
            return_exceptions=True,
        )
        responses = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Governed call %s raised: %s", call.tool_name, outcome)
                responses.append(ActionResponse.error(f"{call.tool_name} failed: {outcome}"))
            else:
                responses.append(outcome)
        return responses

    async def _propose(
        self,
        session: Session,
        prepared: PreparedCall,
        request: ActionRequest,
        decision: GuardrailDecision,
    ) -> ActionResponse:
        tool = prepared.tool
        reason = decision.reason or ""
        try:
            proposal, created = await self.proposals.propose(
                tool.name,
                prepared.raw_args,
                tool.summarize(prepared.args),
                reason,
                request.risk or tool.risk or DEFAULT_PROPOSAL_RISK,
                tool.eta,
                tool.preview(prepared.args),
                request=request,
                tenant_id=session.tenant_id,
                actor_id=session.actor_id,
            )
        except StorageError as e:
            logger.error("Could not persist proposal for %s: %s", tool.name, e.message)
            result = ToolCallResult.failure(
                e.message,
                tool=tool.name,
                args=prepared.raw_args,
                call_id=prepared.call_id,
            )
            self.audit.failure(
                session.tenant_id,
                session.actor_id,
                tool.name,
                result,
                request=request,
                target_table=request.table,
            )
            return ActionResponse.error(
                f"{tool.name} failed: {e.message}",
                decision=decision,
                result=result,
            )

        self.audit.proposal(
            session.tenant_id,
            session.actor_id,
            proposal,
            target_table=request.table,
            duplicate=not created,
        )
        session.remember(proposal)
        return ActionResponse.approval_required(
            [proposal],
            f"{tool.name} requires approval: {reason}",
            decision=decision,
        )

    async def _run(
        self,
        session: Session,
        prepared: PreparedCall,
        request: ActionRequest | None,
        decision: GuardrailDecision | None,
        proposal_id: str | None = None,
    ) -> tuple[ActionResponse, ToolCallResult]:
        result, output = await self.dispatcher.invoke(prepared, session.context(prepared.call_id))
        name = prepared.name
        table = request.table if request else None

        if result.ok:
            metadata = output.metadata if isinstance(output, ToolOutput) else {}
            self.audit.execution(
                session.tenant_id,
                session.actor_id,
                name,
                result,
                request=request,
                target_table=table,
                before=metadata.get("before"),
                after=metadata.get("after"),
                proposal_id=proposal_id,
            )
            return (
                ActionResponse.success(
                    result.data,
                    f"{name} completed.",
                    decision=decision,
                    result=result,
                ),
                result,
            )

        if result.denied:
            self.audit.denial(
                session.tenant_id,
                session.actor_id,
                name,
                result.error or "",
                source="tool",
                request=request,
                target_table=table,
                proposal_id=proposal_id,
            )
            return (
                ActionResponse.denied(result.error or "", decision=decision, result=result),
                result,
            )

        self.audit.failure(
            session.tenant_id,
            session.actor_id,
            name,
            result,
            request=request,
            target_table=table,
            proposal_id=proposal_id,
        )
        return (
            ActionResponse.error(f"{name} failed: {result.error}", decision=decision, result=result),
            result,
        )

    # =========================================================================
    # Proposal resolution
    # =========================================================================

    async def pending(self, session: Session) -> list[Proposal]:
        """Persisted pending proposals for the session's tenant."""
        proposals = await self.proposals.pending(session.tenant_id)
        session.pending = list(proposals)
        return proposals

    async def approve(self, session: Session, proposal_id: str) -> ActionResponse:
        """
        Approve a pending proposal and run it.

        The guardrails are evaluated again against this session's policy.
        A deny now rejects the proposal; needs_approval is satisfied by this
        approval. The proposal is claimed atomically before it runs.

        Raises:
            ProposalNotFoundError: If the proposal does not exist for the tenant
            ProposalExpiredError: If it expired before approval
            ProposalStateError: If it was already approved, rejected or run
        """
        stored = await self.proposals.get_pending(session.tenant_id, proposal_id)
        proposal = stored.proposal
        call = ToolCallRequest(tool_name=proposal.tool, raw_args=proposal.args)

        prepared = self.dispatcher.prepare(call)
        if isinstance(prepared, ToolCallResult):
            await self.proposals.claim(session.tenant_id, proposal_id, session.actor_id)
            await self.proposals.transition(
                session.tenant_id,
                proposal_id,
                ProposalStatus.APPROVED,
                ProposalStatus.FAILED,
                note=prepared.error,
            )
            session.forget(proposal_id)
            self.audit.failure(
                session.tenant_id,
                session.actor_id,
                proposal.tool,
                prepared,
                request=proposal.request,
                proposal_id=proposal_id,
            )
            return ActionResponse.error(f"{proposal.tool} failed: {prepared.error}", result=prepared)

        request = proposal.request or prepared.tool.describe_action(prepared.args)
        if request is None:
            decision = GuardrailDecision.deny(
                f"Tool {prepared.name} declares no authority.",
                rule=RULE_AUTHORITY,
            )
        else:
            decision = session.evaluator.enforce(request, session.tenant_id, session.actor_id)

        if decision.is_denied:
            await self.proposals.transition(
                session.tenant_id,
                proposal_id,
                ProposalStatus.PENDING,
                ProposalStatus.REJECTED,
                resolved_by=session.actor_id,
                note=decision.reason,
            )
            session.forget(proposal_id)
            self.audit.denial(
                session.tenant_id,
                session.actor_id,
                proposal.tool,
                decision.reason or "",
                source="guardrail",
                request=request,
                target_table=request.table if request else None,
                decision=decision,
                proposal_id=proposal_id,
            )
            return ActionResponse.denied(decision.reason or "", decision=decision)

        await self.proposals.claim(session.tenant_id, proposal_id, session.actor_id)
        session.forget(proposal_id)
        logger.info("Proposal %s approved by %s", proposal_id, session.actor_id)

        try:
            response, result = await self._run(session, prepared, request, decision, proposal_id)
        except BaseException as e:
            # A claimed proposal must not stay approved; settle it even if
            # this task is cancelled again while settling
            await asyncio.shield(self._abandon(session, prepared, request, proposal_id, e))
            raise

        try:
            await self.proposals.transition(
                session.tenant_id,
                proposal_id,
                ProposalStatus.APPROVED,
                ProposalStatus.EXECUTED if result.ok else ProposalStatus.FAILED,
                note=None if result.ok else result.error,
            )
        except StorageError as e:
            # The tool already ran and its outcome is in the audit trail
            logger.error(
                "Proposal %s ran but its status could not be recorded: %s",
                proposal_id,
                e.message,
            )
        return response

    async def _abandon(
        self,
        session: Session,
        prepared: PreparedCall,
        request: ActionRequest | None,
        proposal_id: str,
        exc: BaseException,
    ) -> None:
        """Fail a claimed proposal whose run was interrupted, and audit it."""
        reason = str(exc) or type(exc).__name__
        error = f"{prepared.name} interrupted: {reason}"
        logger.warning("Proposal %s %s", proposal_id, error)
        try:
            await self.proposals.transition(
                session.tenant_id,
                proposal_id,
                ProposalStatus.APPROVED,
                ProposalStatus.FAILED,
                note=error,
            )
        except (StorageError, ProposalStateError) as e:
            logger.error("Could not fail interrupted proposal %s: %s", proposal_id, e.message)
        self.audit.failure(
            session.tenant_id,
            session.actor_id,
            prepared.name,
            ToolCallResult.failure(
                error,
                tool=prepared.name,
                args=prepared.raw_args,
                call_id=prepared.call_id,
            ),
            request=request,
            target_table=request.table if request else None,
            proposal_id=proposal_id,
        )

    async def reject(
        self,
        session: Session,
        proposal_id: str,
        note: str | None = None,
    ) -> ActionResponse:
        """
        Reject a pending proposal. Recorded as a denial.

        Raises:
            ProposalNotFoundError: If the proposal does not exist for the tenant
            ProposalExpiredError: If it already expired
            ProposalStateError: If it was already resolved
        """
        stored = await self.proposals.get_pending(session.tenant_id, proposal_id)
        proposal = stored.proposal
        await self.proposals.transition(
            session.tenant_id,
            proposal_id,
            ProposalStatus.PENDING,
            ProposalStatus.REJECTED,
            resolved_by=session.actor_id,
            note=note,
        )
        session.forget(proposal_id)
        reason = note or f"Rejected by {session.actor_id}."
        self.audit.denial(
            session.tenant_id,
            session.actor_id,
            proposal.tool,
            reason,
            source="human",
            request=proposal.request,
            target_table=proposal.request.table if proposal.request else None,
            proposal_id=proposal_id,
        )
        return ActionResponse.denied(reason)

    async def expire(self, tenant_id: str | None = None) -> int:
        """Expire stale pending proposals (all tenants if tenant_id is None)."""
        return await self.proposals.expire(tenant_id)
