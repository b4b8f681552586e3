"""
Policy loading for Steward.

A PolicyStore turns whatever a PolicySource returns for a tenant into a
validated, immutable Policy. Loading is fail-safe: if the source raises,
times out, returns nothing or returns something that does not validate,
the store returns the safe default policy and logs a warning. Callers
never see a fetch error.

Sources:
    - MappingPolicySource: in-memory tenant -> policy mapping
    - YamlPolicySource: one <tenant>.yaml file per tenant in a directory
    - HttpPolicySource: GET {base_url}/tenants/{tenant}/policy
"""

import asyncio
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import yaml
from pydantic import ValidationError

from steward.errors import PolicyLoadError
from steward.schema import Policy, safe_default_policy

logger = logging.getLogger(__name__)

DEFAULT_POLICY_TIMEOUT_SECONDS = 5.0

# Tenant ids used as file names must not be able to escape the policy directory.
_SAFE_TENANT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

PolicyData = Policy | Mapping[str, Any] | None


@runtime_checkable
class PolicySource(Protocol):
    """Anything that can fetch the stored policy for a tenant."""

    async def fetch(self, tenant_id: str) -> PolicyData:
        """Return the tenant's policy, its raw mapping, or None if none is stored."""
        ...


# =============================================================================
# Sources
# =============================================================================


class MappingPolicySource:
    """Policies held in memory, keyed by tenant id."""

    def __init__(self, policies: Mapping[str, Policy | Mapping[str, Any]] | None = None) -> None:
        self._policies: dict[str, Policy | Mapping[str, Any]] = dict(policies or {})

    def set(self, tenant_id: str, policy: Policy | Mapping[str, Any]) -> None:
        self._policies[tenant_id] = policy

    async def fetch(self, tenant_id: str) -> PolicyData:
        return self._policies.get(tenant_id)


class YamlPolicySource:
    """
    Policies stored as YAML files, one per tenant.

    The file for tenant "studio-1" is <directory>/studio-1.yaml. A missing
    file means the tenant has no stored policy.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, tenant_id: str) -> Path:
        """
        Return the policy file path for a tenant.

        Raises:
            PolicyLoadError: If the tenant id is not usable as a file name
        """
        if not _SAFE_TENANT_ID.match(tenant_id) or ".." in tenant_id:
            raise PolicyLoadError(
                tenant_id=tenant_id,
                underlying_error="tenant id is not a safe file name",
            )
        return self.directory / f"{tenant_id}.yaml"

    def _read(self, path: Path) -> Any:
        if not path.is_file():
            return None
        with path.open() as f:
            return yaml.safe_load(f) or {}

    async def fetch(self, tenant_id: str) -> PolicyData:
        path = self.path_for(tenant_id)
        return await asyncio.to_thread(self._read, path)


class HttpPolicySource:
    """
    Policies served by an HTTP policy service.

    Issues GET {base_url}/tenants/{tenant_id}/policy and expects a JSON
    object. A 404 means the tenant has no stored policy; any other
    non-2xx status is an error.

    Args:
        base_url: Service root, e.g. "https://policies.internal"
        client: Optional shared httpx.AsyncClient (owned by the caller)
        headers: Extra headers sent with each request (e.g., auth)
        timeout: Per-request timeout used when no client is supplied
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_POLICY_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._headers = dict(headers or {})
        self._timeout = timeout

    def url_for(self, tenant_id: str) -> str:
        return f"{self.base_url}/tenants/{quote(tenant_id, safe='')}/policy"

    async def _get(self, client: httpx.AsyncClient, tenant_id: str) -> PolicyData:
        response = await client.get(self.url_for(tenant_id), headers=self._headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise PolicyLoadError(
                tenant_id=tenant_id,
                underlying_error=f"expected a JSON object, got {type(data).__name__}",
            )
        return data

    async def fetch(self, tenant_id: str) -> PolicyData:
        if self._client is not None:
            return await self._get(self._client, tenant_id)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._get(client, tenant_id)


# =============================================================================
# Store
# =============================================================================


class PolicyStore:
    """
    Fail-safe policy loader.

    Usage:
        store = PolicyStore(YamlPolicySource("./policies"))
        policy = await store.load("studio-1")

    Attributes:
        source: Where stored policies come from
        timeout_seconds: Bound on one fetch
    """

    def __init__(
        self,
        source: PolicySource,
        timeout_seconds: float = DEFAULT_POLICY_TIMEOUT_SECONDS,
    ) -> None:
        self.source = source
        self.timeout_seconds = timeout_seconds

    async def load(self, tenant_id: str) -> Policy:
        """
        Load the policy for a tenant.

        Never raises for fetch problems. Any failure yields the safe default.

        Args:
            tenant_id: Tenant (studio) identifier

        Returns:
            The tenant's Policy, or safe_default_policy()
        """
        try:
            raw = await asyncio.wait_for(
                self.source.fetch(tenant_id),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Policy fetch for tenant %s timed out after %ss; using safe default",
                tenant_id,
                self.timeout_seconds,
            )
            return safe_default_policy()
        except Exception as e:
            logger.warning(
                "Policy fetch for tenant %s failed (%s); using safe default",
                tenant_id,
                e,
            )
            return safe_default_policy()

        if raw is None:
            logger.warning("No policy stored for tenant %s; using safe default", tenant_id)
            return safe_default_policy()

        if isinstance(raw, Policy):
            return raw

        try:
            return Policy.model_validate(dict(raw))
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(
                "Stored policy for tenant %s is invalid (%s); using safe default",
                tenant_id,
                e,
            )
            return safe_default_policy()
