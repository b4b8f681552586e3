"""
Proposal building, rendering and persistence for Steward.

A proposal is what the agent produces instead of acting when the guardrails
answer needs_approval: a frozen description of the tool call, why it needs
approval and what it will do, shown to a human who approves or rejects it.

Building proposals (make_proposal) and rendering them (format_for_display)
are pure. ProposalManager adds persistence on top of a StewardDB: a TTL,
deduplication of identical pending proposals and the status transitions
used by the governor.
"""

import asyncio
import copy
import json
import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from steward.errors import ProposalExpiredError, ProposalNotFoundError, ProposalStateError
from steward.schema import ActionRequest, Proposal, ProposalStatus, Risk, StoredProposal
from steward.store.db import StewardDB, compute_hash

logger = logging.getLogger(__name__)

DEFAULT_PROPOSAL_TTL_SECONDS = 24 * 3600
MAX_PROPOSAL_TTL_SECONDS = 7 * 24 * 3600


def compute_idempotency_key(
    tool: str,
    args: dict[str, Any],
    tenant_id: str | None = None,
    actor_id: str | None = None,
    request: ActionRequest | None = None,
) -> str:
    """
    Hash that identifies "the same action proposed twice".

    The evaluated request is part of the identity: the same arguments
    described as a different action are a different proposal. Key order in
    args does not matter.
    """
    canonical_args = json.dumps(args, sort_keys=True, default=str, separators=(",", ":"))
    canonical_request = (
        json.dumps(request.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        if request is not None
        else ""
    )
    return compute_hash(
        "\x1f".join([tool, canonical_args, tenant_id or "", actor_id or "", canonical_request])
    )


def make_proposal(
    tool: str,
    args: dict[str, Any],
    requires_approval: bool,
    summary: str,
    reason: str,
    risk: Risk | str,
    eta: str,
    preview: str,
    *,
    request: ActionRequest | None = None,
    tenant_id: str | None = None,
    actor_id: str | None = None,
    ttl_seconds: int = DEFAULT_PROPOSAL_TTL_SECONDS,
    max_ttl_seconds: int = MAX_PROPOSAL_TTL_SECONDS,
    now: datetime | None = None,
) -> Proposal:
    """
    Build a proposal for an action that needs approval.

    Args:
        tool: Tool to run once approved
        args: Tool arguments (deep-copied)
        requires_approval: Must be True
        summary: One-line description for the approver
        reason: Guardrail reason
        risk: Risk level
        eta: Estimated duration, e.g. "immediate"
        preview: What the action will do
        request: The evaluated ActionRequest, re-checked at approval time
        tenant_id: Owning tenant
        actor_id: Proposing actor
        ttl_seconds: Lifetime of the pending proposal (capped at max_ttl_seconds)
        max_ttl_seconds: Cap on ttl_seconds
        now: Clock override

    Returns:
        A new Proposal with a unique id
    """
    created_at = now or datetime.now(UTC)
    ttl = min(max(int(ttl_seconds), 1), max_ttl_seconds)
    snapshot = copy.deepcopy(dict(args))
    return Proposal(
        id=uuid.uuid4().hex,
        tool=tool,
        args=snapshot,
        requires_approval=requires_approval,
        summary=summary,
        reason=reason,
        risk=Risk(risk),
        estimated_duration=eta,
        preview=preview,
        request=request,
        tenant_id=tenant_id,
        actor_id=actor_id,
        idempotency_key=compute_idempotency_key(tool, snapshot, tenant_id, actor_id, request),
        created_at=created_at,
        expires_at=created_at + timedelta(seconds=ttl),
    )


def format_for_display(proposals: Sequence[Proposal]) -> str:
    """
    Render proposals as a compact numbered block.

    Example:
        1. Send invoice INV-7 to jane@example.com
           Reason: Amount 500 exceeds auto limit 100.
           Risk: high | ETA: immediate
           Preview: Invoice total 500 GBP
           ID: 3f2a...
    """
    if not proposals:
        return "No pending proposals."

    blocks = []
    for index, proposal in enumerate(proposals, start=1):
        lines = [
            f"{index}. {proposal.summary}",
            f"   Reason: {proposal.reason}",
            f"   Risk: {proposal.risk.value} | ETA: {proposal.estimated_duration}",
        ]
        if proposal.preview:
            lines.append(f"   Preview: {proposal.preview}")
        lines.append(f"   ID: {proposal.id}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class ProposalManager:
    """
    Persistent proposal lifecycle on top of StewardDB.

    All storage calls run in a worker thread so the event loop never blocks
    on SQLite.

    Attributes:
        db: The backing database
        ttl_seconds: Default lifetime of new proposals
        max_ttl_seconds: Upper bound on any lifetime
    """

    def __init__(
        self,
        db: StewardDB,
        ttl_seconds: int = DEFAULT_PROPOSAL_TTL_SECONDS,
        max_ttl_seconds: int = MAX_PROPOSAL_TTL_SECONDS,
    ) -> None:
        self.db = db
        self.ttl_seconds = min(ttl_seconds, max_ttl_seconds)
        self.max_ttl_seconds = max_ttl_seconds

    async def propose(
        self,
        tool: str,
        args: dict[str, Any],
        summary: str,
        reason: str,
        risk: Risk | str,
        eta: str,
        preview: str,
        *,
        request: ActionRequest | None,
        tenant_id: str,
        actor_id: str,
        ttl_seconds: int | None = None,
    ) -> tuple[Proposal, bool]:
        """
        Build and persist a proposal.

        Returns:
            (proposal, created). created is False when an identical pending
            proposal already existed and was returned instead.
        """
        proposal = make_proposal(
            tool,
            args,
            True,
            summary,
            reason,
            risk,
            eta,
            preview,
            request=request,
            tenant_id=tenant_id,
            actor_id=actor_id,
            ttl_seconds=ttl_seconds or self.ttl_seconds,
            max_ttl_seconds=self.max_ttl_seconds,
        )
        stored = await asyncio.to_thread(self.db.save_proposal, proposal)
        created = stored.proposal.id == proposal.id
        if not created:
            logger.info(
                "Reusing pending proposal %s for duplicate %s request",
                stored.proposal.id,
                tool,
            )
        return stored.proposal, created

    async def get(self, tenant_id: str, proposal_id: str) -> StoredProposal:
        """
        Fetch a proposal, auto-expiring it when stale.

        Raises:
            ProposalNotFoundError: If no such proposal exists for the tenant
        """
        stored = await asyncio.to_thread(self.db.get_proposal, tenant_id, proposal_id)
        if stored is None:
            raise ProposalNotFoundError(proposal_id=proposal_id)
        return stored

    async def get_pending(self, tenant_id: str, proposal_id: str) -> StoredProposal:
        """
        Fetch a proposal that must still be pending.

        Raises:
            ProposalNotFoundError: If no such proposal exists
            ProposalExpiredError: If it expired before being resolved
            ProposalStateError: If it was already resolved
        """
        stored = await self.get(tenant_id, proposal_id)
        if stored.status is ProposalStatus.EXPIRED:
            raise ProposalExpiredError(proposal_id=proposal_id)
        if stored.status is not ProposalStatus.PENDING:
            raise ProposalStateError(
                proposal_id=proposal_id,
                current=stored.status.value,
                requested=ProposalStatus.APPROVED.value,
            )
        return stored

    async def pending(self, tenant_id: str, limit: int = 100) -> list[Proposal]:
        """Live pending proposals for a tenant, newest first."""
        stored = await asyncio.to_thread(
            self.db.list_proposals,
            tenant_id,
            ProposalStatus.PENDING,
            limit,
        )
        return [s.proposal for s in stored]

    async def claim(self, tenant_id: str, proposal_id: str, resolved_by: str) -> None:
        """
        Claim a pending proposal for execution (pending -> approved).

        Raises:
            ProposalStateError: If another caller already claimed or resolved it
            ProposalExpiredError: If it expired in the meantime
        """
        claimed = await asyncio.to_thread(
            self.db.claim_proposal,
            tenant_id,
            proposal_id,
            resolved_by,
        )
        if claimed:
            return
        stored = await self.get(tenant_id, proposal_id)
        if stored.status is ProposalStatus.EXPIRED:
            raise ProposalExpiredError(proposal_id=proposal_id)
        raise ProposalStateError(
            proposal_id=proposal_id,
            current=stored.status.value,
            requested=ProposalStatus.APPROVED.value,
        )

    async def transition(
        self,
        tenant_id: str,
        proposal_id: str,
        from_status: ProposalStatus,
        to_status: ProposalStatus,
        resolved_by: str | None = None,
        note: str | None = None,
    ) -> None:
        """
        Move a proposal between statuses.

        Raises:
            ProposalStateError: If the proposal was not in from_status
        """
        moved = await asyncio.to_thread(
            self.db.transition_proposal,
            tenant_id,
            proposal_id,
            from_status,
            to_status,
            resolved_by,
            note,
        )
        if not moved:
            stored = await self.get(tenant_id, proposal_id)
            raise ProposalStateError(
                proposal_id=proposal_id,
                current=stored.status.value,
                requested=to_status.value,
            )

    async def expire(self, tenant_id: str | None = None) -> int:
        """Expire every stale pending proposal. Returns how many expired."""
        count = await asyncio.to_thread(self.db.expire_proposals, tenant_id)
        if count:
            logger.info("Expired %d stale proposal(s)", count)
        return count
