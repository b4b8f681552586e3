"""
Schema definitions for Steward.

This module defines the Pydantic models used throughout Steward:
- Policy: What a tenant allows the agent to do (immutable per session)
- ActionRequest: What the agent is asking to do right now
- GuardrailDecision: allow / needs_approval / deny with a reason
- Proposal / StoredProposal: Actions waiting for human sign-off
- AuditRecord: One append-only entry per terminal event
- ToolCallRequest / ToolCallResult: The dispatch boundary
- ActionResponse: The envelope returned to the agent loop

Design Decisions:
    - Models are immutable (frozen=True) and reject unknown keys; the
      policy's restricted_fields map is a read-only view
    - Policy defaults are the most restrictive value of each field, so a
      partial configuration never unlocks more than it names
    - Decisions and results carry human-readable reasons that are usable
      verbatim in audit logs and proposal text
"""

import math
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

# Error messages are cut to this length before they reach users or the audit log.
MAX_ERROR_LENGTH = 200

# Stack traces kept on a failed ToolCallResult.
MAX_STACK_FRAMES = 3

# Authorities granted by the fail-safe policy.
DEFAULT_READ_AUTHORITIES = frozenset({
    "READ_CLIENTS",
    "READ_LEADS",
    "READ_SESSIONS",
    "READ_INVOICES",
    "DRAFT_EMAIL",
})


# =============================================================================
# Enums
# =============================================================================


class PolicyMode(str, Enum):
    """
    How much the agent may do on its own.

    READ_ONLY routes every granted action to approval, PROPOSE does the same
    after the other checks, AUTO_SAFE runs low-risk allow-listed actions, and
    AUTO_ALL runs anything that clears the threshold checks.
    """

    READ_ONLY = "read_only"
    PROPOSE = "propose"
    AUTO_SAFE = "auto_safe"
    AUTO_ALL = "auto_all"


class Risk(str, Enum):
    """Risk level an agent attaches to an action."""

    LOW = "low"
    MED = "med"
    HIGH = "high"


class DecisionKind(str, Enum):
    """Outcome of a guardrail evaluation."""

    ALLOW = "allow"
    NEEDS_APPROVAL = "needs_approval"
    DENY = "deny"


class ProposalStatus(str, Enum):
    """Lifecycle status of a persisted proposal."""

    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class AuditKind(str, Enum):
    """The four terminal events recorded in the audit trail."""

    PROPOSAL = "proposal"
    EXECUTION = "execution"
    DENIAL = "denial"
    FAILURE = "failure"


class ResponseStatus(str, Enum):
    """Status of an ActionResponse returned to the agent loop."""

    SUCCESS = "success"
    APPROVAL_REQUIRED = "approval_required"
    DENIED = "denied"
    ERROR = "error"


def _normalize_domain(value: str) -> str:
    return value.strip().lstrip("@").lower()


# =============================================================================
# Policy Models
# =============================================================================


class Policy(BaseModel):
    """
    Per-tenant governance policy.

    Loaded once per session and never mutated. Every field defaults to its
    most restrictive value.

    Attributes:
        mode: Autonomy mode (read_only, propose, auto_safe, auto_all)
        authorities: Named permissions granted to the agent
        approval_required_over_amount: Amounts above this need approval
        restricted_fields: table name -> field names that need approval to write
        email_domain_trustlist: Recipient domains the agent may email freely
        auto_safe_actions: Actions that may run unattended in auto_safe mode
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    mode: PolicyMode = Field(
        default=PolicyMode.READ_ONLY,
        description="Autonomy mode",
    )
    authorities: frozenset[str] = Field(
        default_factory=frozenset,
        description="Named permissions granted to the agent",
    )
    approval_required_over_amount: float = Field(
        default=0,
        ge=0,
        allow_inf_nan=False,
        validation_alias=AliasChoices("approval_required_over_amount", "invoice_auto_limit"),
        description="Monetary amounts above this need approval",
    )
    restricted_fields: Mapping[str, frozenset[str]] = Field(
        default_factory=lambda: MappingProxyType({}),
        description="table -> fields whose writes need approval",
    )
    email_domain_trustlist: frozenset[str] = Field(
        default_factory=frozenset,
        description="Recipient domains that do not need approval",
    )
    auto_safe_actions: frozenset[str] = Field(
        default_factory=frozenset,
        description="Actions allowed unattended in auto_safe mode",
    )

    @field_validator("email_domain_trustlist", mode="before")
    @classmethod
    def normalize_trustlist(cls, v: Any) -> Any:
        """Lower-case trusted domains so matching is case-insensitive."""
        if isinstance(v, (list, tuple, set, frozenset)):
            return frozenset(_normalize_domain(str(d)) for d in v if str(d).strip())
        return v

    @field_validator("restricted_fields")
    @classmethod
    def freeze_restricted_fields(cls, v: Mapping[str, frozenset[str]]) -> Mapping[str, frozenset[str]]:
        """Hold the table map behind a read-only view."""
        return MappingProxyType(dict(v))

    @field_serializer("restricted_fields")
    def serialize_restricted_fields(self, v: Mapping[str, frozenset[str]]) -> dict[str, list[str]]:
        return {table: sorted(fields) for table, fields in v.items()}

    def restricted_fields_for(self, table: str) -> frozenset[str]:
        """Return the restricted field names for a table (empty if none)."""
        return self.restricted_fields.get(table, frozenset())


def safe_default_policy() -> Policy:
    """
    The policy used whenever a tenant policy cannot be loaded.

    Read-only mode with read/draft authorities and a zero amount limit.
    """
    return Policy(
        mode=PolicyMode.READ_ONLY,
        authorities=DEFAULT_READ_AUTHORITIES,
        approval_required_over_amount=0,
    )


# =============================================================================
# Guardrail Models
# =============================================================================


class ActionRequest(BaseModel):
    """
    A single action the agent wants to take, as seen by the guardrails.

    Only `authority` is required. Any other field left unset means the
    corresponding guardrail rule does not apply.

    Attributes:
        authority: The permission this action needs (e.g., "SEND_INVOICE")
        action: Action name checked against auto_safe_actions
        table: Table being written, for restricted-field checks
        fields: Field -> value being written
        amount: Monetary amount (e.g., invoice total)
        risk: Agent-assessed risk level
        email_domain: Recipient domain for outgoing email
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    authority: str = Field(..., min_length=1, description="Required authority")
    action: str | None = Field(default=None, description="Action name")
    table: str | None = Field(default=None, description="Target table")
    fields: dict[str, Any] | None = Field(default=None, description="Fields being written")
    amount: float | None = Field(
        default=None,
        allow_inf_nan=False,
        description="Monetary amount",
    )
    risk: Risk | None = Field(default=None, description="Risk level")
    email_domain: str | None = Field(default=None, description="Recipient email domain")

    @field_validator("amount", mode="before")
    @classmethod
    def amount_must_be_number(cls, v: Any) -> Any:
        """Only real numbers count as amounts."""
        if v is None:
            return v
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            msg = f"amount must be a number, got {type(v).__name__}"
            raise ValueError(msg)
        return v

    @field_validator("email_domain", mode="before")
    @classmethod
    def normalize_email_domain(cls, v: Any) -> Any:
        """Lower-case the domain; an empty domain means no email rule."""
        if isinstance(v, str):
            normalized = _normalize_domain(v)
            return normalized or None
        return v


class GuardrailDecision(BaseModel):
    """
    Result of evaluating an ActionRequest against a Policy.

    Exactly one of allow / needs_approval / deny. Non-allow decisions always
    carry a human-readable reason.

    Attributes:
        kind: The decision
        reason: Why approval is needed or the action is denied
        rule: Which guardrail rule produced this decision
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: DecisionKind = Field(..., description="The decision")
    reason: str | None = Field(default=None, description="Human-readable reason")
    rule: str | None = Field(default=None, description="Rule that matched")

    @model_validator(mode="after")
    def reason_matches_kind(self) -> "GuardrailDecision":
        """Non-allow decisions need a reason; allow decisions have none."""
        if self.kind is DecisionKind.ALLOW:
            if self.reason is not None:
                msg = "allow decisions do not carry a reason"
                raise ValueError(msg)
        elif not self.reason or not self.reason.strip():
            msg = f"{self.kind.value} decisions require a reason"
            raise ValueError(msg)
        return self

    @classmethod
    def allow(cls, rule: str | None = None) -> "GuardrailDecision":
        """Create an ALLOW decision."""
        return cls(kind=DecisionKind.ALLOW, rule=rule)

    @classmethod
    def needs_approval(cls, reason: str, rule: str | None = None) -> "GuardrailDecision":
        """Create a NEEDS_APPROVAL decision."""
        return cls(kind=DecisionKind.NEEDS_APPROVAL, reason=reason, rule=rule)

    @classmethod
    def deny(cls, reason: str, rule: str | None = None) -> "GuardrailDecision":
        """Create a DENY decision."""
        return cls(kind=DecisionKind.DENY, reason=reason, rule=rule)

    @property
    def is_allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOW

    @property
    def requires_approval(self) -> bool:
        return self.kind is DecisionKind.NEEDS_APPROVAL

    @property
    def is_denied(self) -> bool:
        return self.kind is DecisionKind.DENY


# =============================================================================
# Proposal Models
# =============================================================================


class Proposal(BaseModel):
    """
    An action waiting for human approval.

    The args are a deep snapshot taken when the proposal was made, so later
    changes to the caller's objects cannot alter what the human approves.

    Attributes:
        id: Unique proposal identifier
        tool: Name of the tool to run on approval
        args: Snapshot of the tool arguments
        requires_approval: Always True
        summary: One-line description for the approver
        reason: Why approval is needed (guardrail reason)
        risk: Risk level shown to the approver
        estimated_duration: Rough time to execute (e.g., "2 minutes")
        preview: Free-text preview of the effect
        request: The evaluated ActionRequest, re-checked on approval
        tenant_id: Tenant the proposal belongs to
        actor_id: Who (or which agent session) proposed it
        idempotency_key: Hash of tool + args + tenant + actor + request
        created_at: When the proposal was made
        expires_at: When a still-pending proposal expires
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    tool: str = Field(..., min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    requires_approval: Literal[True] = True
    summary: str
    reason: str
    risk: Risk = Risk.HIGH
    estimated_duration: str = "immediate"
    preview: str = ""
    request: ActionRequest | None = None
    tenant_id: str | None = None
    actor_id: str | None = None
    idempotency_key: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the proposal is past its expiry time."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


class StoredProposal(BaseModel):
    """A persisted proposal together with its lifecycle status."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    proposal: Proposal
    status: ProposalStatus = ProposalStatus.PENDING
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    note: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is ProposalStatus.PENDING


# =============================================================================
# Audit Models
# =============================================================================


class AuditRecord(BaseModel):
    """
    One immutable audit entry describing a terminal event.

    Attributes:
        record_id: Unique identifier for the record
        tenant_id: Tenant (studio) the action belongs to
        actor_id: User or agent session that triggered it
        action: Action or tool name
        target_table: Table affected, if any
        kind: proposal, execution, denial or failure
        payload: Request/result snapshot
        amount: Monetary amount, for monetary actions
        timestamp: When the event happened (timezone-aware)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str = Field(..., min_length=1)
    actor_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    target_table: str | None = None
    kind: AuditKind
    payload: dict[str, Any] = Field(default_factory=dict)
    amount: float | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("timestamp")
    @classmethod
    def timestamp_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            msg = "timestamp must be timezone-aware"
            raise ValueError(msg)
        return value


# =============================================================================
# Dispatch Models
# =============================================================================


class ToolCallRequest(BaseModel):
    """
    A tool call as produced by the planning layer.

    Attributes:
        tool_name: Registered tool name
        raw_args: JSON text (as emitted by the model), an already-parsed
            mapping, or None/empty meaning no arguments
        call_id: Identifier from the planning layer, echoed back in results
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool_name: str = Field(..., min_length=1)
    raw_args: str | dict[str, Any] | None = None
    call_id: str | None = None


class ToolCallResult(BaseModel):
    """
    The outcome of one dispatched tool call.

    Dispatch never raises: every failure is described by ok=False, an error
    string and the tool/args involved.

    Attributes:
        ok: Whether the tool ran and returned data
        data: Tool output when ok
        error: Error code or truncated message when not ok
        tool: Tool name
        args: Arguments (parsed when possible, raw otherwise)
        stack: Up to three innermost stack frames for diagnostics
        detail: Parser or validation detail
        denied: True when the tool itself refused on business grounds
        call_id: Echo of the request's call_id
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ok: bool
    data: Any = None
    error: str | None = None
    tool: str | None = None
    args: Any = None
    stack: list[str] | None = None
    detail: str | None = None
    denied: bool = False
    call_id: str | None = None

    @field_validator("error", "detail", mode="before")
    @classmethod
    def truncate_message(cls, value: Any) -> Any:
        if isinstance(value, str) and len(value) > MAX_ERROR_LENGTH:
            return value[: MAX_ERROR_LENGTH - 3] + "..."
        return value

    @field_validator("stack", mode="before")
    @classmethod
    def cap_stack(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value[:MAX_STACK_FRAMES]
        return value

    @model_validator(mode="after")
    def error_matches_ok(self) -> "ToolCallResult":
        if self.ok and self.error is not None:
            msg = "successful results do not carry an error"
            raise ValueError(msg)
        if not self.ok and not self.error:
            msg = "failed results require an error"
            raise ValueError(msg)
        return self

    @classmethod
    def success(cls, data: Any, tool: str | None = None, call_id: str | None = None) -> "ToolCallResult":
        """Create a successful result."""
        return cls(ok=True, data=data, tool=tool, call_id=call_id)

    @classmethod
    def failure(
        cls,
        error: str,
        tool: str | None = None,
        args: Any = None,
        *,
        stack: list[str] | None = None,
        detail: str | None = None,
        denied: bool = False,
        call_id: str | None = None,
    ) -> "ToolCallResult":
        """Create a failed result."""
        return cls(
            ok=False,
            error=error,
            tool=tool,
            args=args,
            stack=stack,
            detail=detail,
            denied=denied,
            call_id=call_id,
        )


# =============================================================================
# Response Envelope
# =============================================================================


class ActionResponse(BaseModel):
    """
    What a governed action returns to the agent loop.

    Attributes:
        status: success, approval_required, denied or error
        message: Human-readable summary (includes the reason or error)
        data: Tool output on success
        proposals: Proposals awaiting approval
        decision: The guardrail decision, when one was made
        result: The dispatcher result, when a tool ran
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: ResponseStatus
    message: str
    data: Any = None
    proposals: list[Proposal] = Field(default_factory=list)
    decision: GuardrailDecision | None = None
    result: ToolCallResult | None = None

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.SUCCESS

    @classmethod
    def success(cls, data: Any, message: str, **kwargs: Any) -> "ActionResponse":
        """The action ran and produced data."""
        return cls(status=ResponseStatus.SUCCESS, data=data, message=message, **kwargs)

    @classmethod
    def approval_required(
        cls,
        proposals: list[Proposal],
        message: str,
        **kwargs: Any,
    ) -> "ActionResponse":
        """The action waits for a human to approve the given proposals."""
        return cls(
            status=ResponseStatus.APPROVAL_REQUIRED,
            proposals=proposals,
            message=message,
            **kwargs,
        )

    @classmethod
    def denied(cls, reason: str, **kwargs: Any) -> "ActionResponse":
        """The action was refused."""
        return cls(status=ResponseStatus.DENIED, message=reason, **kwargs)

    @classmethod
    def error(cls, message: str, **kwargs: Any) -> "ActionResponse":
        """The action was allowed but could not be carried out."""
        return cls(status=ResponseStatus.ERROR, message=message, **kwargs)


# =============================================================================
# Number formatting
# =============================================================================


def format_number(value: float) -> str:
    """
    Render a number the way it reads in reasons: 500 not 500.0.

    Examples:
        500.0 -> "500"
        99.5 -> "99.5"
    """
    if math.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return repr(float(value))


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_policy(path: Path | str) -> Policy:
    """
    Load a policy from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated Policy object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return Policy.model_validate(data or {})


def load_policy_from_string(content: str) -> Policy:
    """Load a policy from a YAML string."""
    data = yaml.safe_load(content)
    return Policy.model_validate(data or {})
