"""
Pytest configuration and fixtures for Steward tests.

This module provides shared fixtures used across unit and integration
tests: policies, a temporary database, a registry of sample business tools
and a fully wired Governor.
"""

import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest
from sample_tools import build_registry

from steward.audit import AuditLog
from steward.dispatch import ToolDispatcher
from steward.governor import Governor
from steward.policy import MappingPolicySource, PolicyStore
from steward.proposals import ProposalManager
from steward.schema import Policy, PolicyMode
from steward.store import StewardDB
from steward.tools import ToolRegistry

TENANT = "studio-1"
ACTOR = "agent-1"
APPROVER = "owner-1"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir: Path) -> Generator[StewardDB, None, None]:
    """A fresh database in a temporary directory."""
    database = StewardDB(temp_dir / "steward.db")
    yield database
    database.close()


# =============================================================================
# Policies
# =============================================================================


@pytest.fixture
def invoice_policy() -> Policy:
    """auto_all policy with a 100 auto limit on invoices."""
    return Policy(
        mode=PolicyMode.AUTO_ALL,
        authorities=frozenset({"SEND_INVOICE", "CREATE_INVOICE", "READ_CLIENTS", "READ_LEADS"}),
        approval_required_over_amount=100,
    )


@pytest.fixture
def auto_safe_policy() -> Policy:
    """auto_safe policy that lets create_lead run unattended."""
    return Policy(
        mode=PolicyMode.AUTO_SAFE,
        authorities=frozenset({"CREATE_LEAD", "READ_LEADS"}),
        auto_safe_actions=frozenset({"create_lead"}),
        email_domain_trustlist=frozenset({"example.com"}),
        approval_required_over_amount=1000,
    )


@pytest.fixture
def restricted_policy() -> Policy:
    """auto_all policy that restricts lead email and priority writes."""
    return Policy(
        mode=PolicyMode.AUTO_ALL,
        authorities=frozenset({"CREATE_LEAD"}),
        restricted_fields={"crm_leads": frozenset({"email", "priority"})},
    )


@pytest.fixture
def sample_policy_yaml() -> str:
    """Return a simple tenant policy YAML for testing."""
    return """
mode: auto_safe
authorities:
  - CREATE_LEAD
  - READ_LEADS
  - SEND_INVOICE
approval_required_over_amount: 250
restricted_fields:
  crm_leads:
    - email
email_domain_trustlist:
  - Example.com
auto_safe_actions:
  - create_lead
"""


# =============================================================================
# Governor
# =============================================================================


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry holding every sample tool."""
    return build_registry()


@pytest.fixture
def policy_source(invoice_policy: Policy, auto_safe_policy: Policy) -> MappingPolicySource:
    """Tenant policies keyed by tenant id."""
    return MappingPolicySource({
        TENANT: invoice_policy,
        "studio-2": auto_safe_policy,
    })


@pytest.fixture
def make_governor(
    db: StewardDB,
    registry: ToolRegistry,
    policy_source: MappingPolicySource,
) -> Callable[..., Governor]:
    """
    Factory for governors sharing the test database.

    Build the governor inside the test's event loop so audit workers run
    on that loop.
    """

    def factory(ttl_seconds: int = 3600, tool_timeout_seconds: float = 5.0) -> Governor:
        return Governor(
            policy_store=PolicyStore(policy_source, timeout_seconds=1.0),
            dispatcher=ToolDispatcher(registry, timeout_seconds=tool_timeout_seconds),
            proposals=ProposalManager(db, ttl_seconds=ttl_seconds),
            audit=AuditLog(db),
        )

    return factory
