"""
Steward - Governance layer for agent-initiated business actions.

Steward sits between an AI agent and the studio's business tools (invoices,
leads, email, CRM rows). It provides:
- An immutable per-tenant policy with a fail-safe default
- An ordered guardrail chain deciding allow / needs approval / deny
- Proposals for risky actions, persisted with expiry and re-checked on approval
- A dispatch boundary that turns every tool failure into data
- An append-only audit trail ordered per tenant and actor

Example usage:
    $ steward evaluate policy.yaml --request '{"authority": "SEND_INVOICE", "amount": 500}'
    $ steward proposals list --tenant studio-1
    $ steward audit studio-1
"""

__version__ = "0.1.0"
__author__ = "Steward Contributors"

__all__ = [
    "__version__",
    "__author__",
]
