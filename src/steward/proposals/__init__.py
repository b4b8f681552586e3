"""
Proposals module for Steward.

Proposals are actions held for human approval. See proposals.manager.
"""

from steward.proposals.manager import (
    ProposalManager,
    compute_idempotency_key,
    format_for_display,
    make_proposal,
)

__all__ = [
    "ProposalManager",
    "compute_idempotency_key",
    "format_for_display",
    "make_proposal",
]
