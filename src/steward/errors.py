"""
Exception hierarchy for Steward.

All Steward exceptions inherit from StewardError, allowing callers to catch
all Steward-specific exceptions with a single except clause.

Exception Categories:
    - Governance: AuthorityDeniedError, PolicyDeniedError, ApprovalRequiredError
    - Policy loading: PolicyLoadError
    - Tools: ToolNotFoundError, ArgumentParseError, ToolExecutionError, ToolTimeoutError
    - Proposals: ProposalNotFoundError, ProposalExpiredError, ProposalStateError
    - Audit: AuditWriteError (never fatal to the primary action)
    - Storage and configuration errors

Governance outcomes are normally returned as data (GuardrailDecision,
ToolCallResult, ActionResponse). The governance exceptions are the raising
forms of those decisions, for tool bodies that guard themselves with
require_authority() or guardrail.require(); the dispatcher turns them back
into denied results. ToolExecutionError wraps whatever a tool raised.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Governance errors: 1xxx
ERROR_AUTHORITY_DENIED = 1001
ERROR_POLICY_DENIED = 1002
ERROR_APPROVAL_REQUIRED = 1003
ERROR_POLICY_LOAD = 1004

# Tool errors: 2xxx
ERROR_TOOL_NOT_FOUND = 2001
ERROR_ARGUMENT_PARSE = 2002
ERROR_TOOL_EXECUTION_FAILED = 2003
ERROR_TOOL_TIMEOUT = 2004

# Proposal errors: 3xxx
ERROR_PROPOSAL_NOT_FOUND = 3001
ERROR_PROPOSAL_EXPIRED = 3002
ERROR_PROPOSAL_STATE = 3003

# Audit errors: 4xxx
ERROR_AUDIT_WRITE = 4001

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003

# Configuration errors: 6xxx
ERROR_CONFIG_INVALID = 6001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class StewardError(Exception):
    """
    Base exception for all Steward errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Governance Errors
# =============================================================================


@dataclass
class AuthorityDeniedError(StewardError):
    """
    Raised when the policy does not grant the authority an action needs.

    This check is absolute: no policy mode can bypass it.
    """

    authority: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Authority {self.authority} not granted."
        if self.code == 0:
            self.code = ERROR_AUTHORITY_DENIED
        if not self.suggestion:
            self.suggestion = "Grant the authority in the tenant policy"
        self.context["authority"] = self.authority


@dataclass
class PolicyDeniedError(StewardError):
    """Raised when an action is denied by the guardrail chain."""

    reason: str = ""
    rule: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy denied: {self.reason}"
        if self.code == 0:
            self.code = ERROR_POLICY_DENIED
        self.context.update({
            "reason": self.reason,
            "rule": self.rule,
        })


@dataclass
class ApprovalRequiredError(StewardError):
    """Raised when an action needs human approval before it may run."""

    reason: str = ""
    proposal_id: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Approval required: {self.reason}"
        if self.code == 0:
            self.code = ERROR_APPROVAL_REQUIRED
        self.context.update({
            "reason": self.reason,
            "proposal_id": self.proposal_id,
        })


@dataclass
class PolicyLoadError(StewardError):
    """Raised by a policy source when a tenant policy cannot be fetched."""

    tenant_id: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to load policy for {self.tenant_id}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_POLICY_LOAD
        self.context.update({
            "tenant_id": self.tenant_id,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Tool Errors
# =============================================================================


@dataclass
class ToolError(StewardError):
    """
    Base class for tool errors.

    Attributes:
        tool: Name of the tool involved
        tool_args: Arguments that were provided
    """

    tool: str = ""
    tool_args: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "tool": self.tool,
            "tool_args": self.tool_args,
        })


@dataclass
class ToolNotFoundError(ToolError):
    """Raised when a tool is not registered."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool not found: {self.tool}"
        if self.code == 0:
            self.code = ERROR_TOOL_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Check tool name spelling or register the tool"
        super().__post_init__()


@dataclass
class ArgumentParseError(ToolError):
    """Raised when tool arguments are not valid JSON or fail schema validation."""

    error_kind: str = "invalid_args"
    validation_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid arguments for {self.tool}: {self.validation_error}"
        if self.code == 0:
            self.code = ERROR_ARGUMENT_PARSE
        super().__post_init__()
        self.context.update({
            "error_kind": self.error_kind,
            "validation_error": self.validation_error,
        })


@dataclass
class ToolExecutionError(ToolError):
    """Raised when a tool fails during execution."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool {self.tool} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_TOOL_EXECUTION_FAILED
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class ToolTimeoutError(ToolError):
    """Raised when a tool exceeds its timeout."""

    timeout_seconds: float = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.tool} timed out after {self.timeout_seconds:g}s"
        if self.code == 0:
            self.code = ERROR_TOOL_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Increase tool_timeout_seconds or the tool's own timeout"
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


# =============================================================================
# Proposal Errors
# =============================================================================


@dataclass
class ProposalError(StewardError):
    """Base class for proposal lifecycle errors."""

    proposal_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["proposal_id"] = self.proposal_id


@dataclass
class ProposalNotFoundError(ProposalError):
    """Raised when a proposal does not exist for the tenant."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Proposal not found: {self.proposal_id}"
        if self.code == 0:
            self.code = ERROR_PROPOSAL_NOT_FOUND
        super().__post_init__()


@dataclass
class ProposalExpiredError(ProposalError):
    """Raised when a proposal passed its expiry before being resolved."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Proposal expired: {self.proposal_id}"
        if self.code == 0:
            self.code = ERROR_PROPOSAL_EXPIRED
        if not self.suggestion:
            self.suggestion = "Ask the agent to propose the action again"
        super().__post_init__()


@dataclass
class ProposalStateError(ProposalError):
    """Raised on an invalid proposal status transition."""

    current: str = ""
    requested: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Proposal {self.proposal_id} is {self.current}, cannot move to {self.requested}"
            )
        if self.code == 0:
            self.code = ERROR_PROPOSAL_STATE
        super().__post_init__()
        self.context.update({
            "current": self.current,
            "requested": self.requested,
        })


# =============================================================================
# Audit Errors
# =============================================================================


@dataclass
class AuditWriteError(StewardError):
    """
    Raised by an audit sink when a record cannot be written.

    The audit log catches this and reports it on the log channel;
    it never fails the primary action.
    """

    record_id: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Audit write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_AUDIT_WRITE
        self.context.update({
            "record_id": self.record_id,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(StewardError):
    """
    Base class for storage/database errors.

    Attributes:
        operation: The operation that failed (e.g., "insert", "query")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(StewardError):
    """Raised when the Steward configuration file is missing or invalid."""

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.path}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context["path"] = self.path
