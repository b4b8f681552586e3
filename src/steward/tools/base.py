"""
Base classes for the tool interface.

This module defines the core abstractions for tools in Steward:
- Tool: Abstract base class that all business tools implement
- FunctionTool: Adapter turning a plain (sync or async) callable into a Tool
- ToolContext: Runtime context passed to tools during execution
- ToolOutput: Explicit ok / denied / fail result from a tool

Design Principles:
    - Tools receive validated arguments: each tool declares a pydantic
      args_model and the dispatcher validates raw arguments against it
    - Tools return ToolOutput: a business refusal is ToolOutput.denied(),
      an expected failure is ToolOutput.fail(); exceptions mean
      infrastructure failure
    - Tools describe themselves to the guardrails: describe_action() turns
      arguments into the ActionRequest the policy is checked against
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from steward.schema import ActionRequest, Policy, Risk


class EmptyArgs(BaseModel):
    """Argument model for tools that take no arguments."""

    model_config = ConfigDict(extra="forbid")


class OutputKind(str, Enum):
    """What a tool reports about its own run."""

    OK = "ok"
    DENIED = "denied"
    FAIL = "fail"


@dataclass(frozen=True)
class ToolOutput:
    """
    Explicit result of a tool execution.

    Attributes:
        kind: ok, denied (business refusal) or fail (expected failure)
        data: Output data when ok
        error: Reason or error message when not ok
        metadata: Extra facts for the audit trail (e.g., "before"/"after"
            snapshots of a mutated row)
    """

    kind: OutputKind
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.kind is OutputKind.OK

    @classmethod
    def ok(cls, data: Any, **metadata: Any) -> "ToolOutput":
        """Create a successful output."""
        return cls(kind=OutputKind.OK, data=data, metadata=metadata)

    @classmethod
    def denied(cls, reason: str, **metadata: Any) -> "ToolOutput":
        """The tool refused on business grounds (e.g., not authorized)."""
        return cls(kind=OutputKind.DENIED, error=reason, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolOutput":
        """Create a failed output."""
        return cls(kind=OutputKind.FAIL, error=error, metadata=metadata)


@dataclass
class ToolContext:
    """
    Runtime context passed to tools during execution.

    Attributes:
        tenant_id: Tenant (studio) the call runs for
        actor_id: User or agent session making the call
        policy: The session's policy snapshot, for tools that guard
            themselves with require_authority()
        call_id: Identifier of the tool call, when known
        metadata: Additional context-specific metadata
    """

    tenant_id: str
    actor_id: str
    policy: Policy | None = None
    call_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """
    Abstract base class for all Steward tools.

    Subclasses must implement:
    - name property: The tool's unique identifier
    - execute(): Performs the action on validated arguments

    Class attributes subclasses usually set:
    - args_model: pydantic model for the arguments
    - authority: Authority the action needs (None means the tool is
      ungoverned and the governor will refuse it)
    - action / table / risk: Defaults for describe_action()
    - timeout_seconds: Per-tool timeout (dispatcher default if None)

    Example:
        class CreateLeadArgs(BaseModel):
            first_name: str
            email: str

        class CreateLeadTool(Tool):
            args_model = CreateLeadArgs
            authority = "CREATE_LEAD"
            action = "create_lead"
            table = "crm_leads"

            @property
            def name(self) -> str:
                return "create_lead"

            async def execute(self, args, context):
                return ToolOutput.ok({"id": 1, "email": args.email})
    """

    args_model: type[BaseModel] = EmptyArgs
    authority: str | None = None
    action: str | None = None
    table: str | None = None
    risk: Risk | None = None
    timeout_seconds: float | None = None
    eta: str = "immediate"

    @property
    @abstractmethod
    def name(self) -> str:
        """
        The unique identifier for this tool.

        Returns:
            The tool's unique name (e.g., "create_invoice")
        """
        ...

    @property
    def description(self) -> str:
        """Human-readable description, used in function specs."""
        return f"Tool: {self.name}"

    @abstractmethod
    async def execute(self, args: Any, context: ToolContext) -> ToolOutput:
        """
        Execute the tool with validated arguments.

        Args:
            args: Instance of args_model
            context: Runtime context (tenant, actor, policy)

        Returns:
            ToolOutput.ok / denied / fail
        """
        ...

    def describe_action(self, args: Any) -> ActionRequest | None:
        """
        Describe a call as an ActionRequest for the guardrails.

        The default uses the class attributes and, when the tool writes a
        table, the supplied argument fields. Override to add an amount or
        an email domain.

        Returns:
            ActionRequest, or None when the tool declares no authority
        """
        if self.authority is None:
            return None
        fields = None
        if self.table is not None and isinstance(args, BaseModel):
            fields = args.model_dump(exclude_unset=True)
        return ActionRequest(
            authority=self.authority,
            action=self.action,
            table=self.table,
            fields=fields,
            risk=self.risk,
        )

    def summarize(self, args: Any) -> str:
        """One-line summary shown on a proposal."""
        return f"Run {self.name}"

    def preview(self, args: Any) -> str:
        """Preview of the effect shown on a proposal."""
        if isinstance(args, BaseModel):
            return json.dumps(args.model_dump(mode="json"), sort_keys=True)
        return json.dumps(args, sort_keys=True, default=str)

    def function_spec(self) -> dict[str, Any]:
        """OpenAI-style function description of this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }

    def __repr__(self) -> str:
        """String representation of the tool."""
        return f"<Tool: {self.name}>"


# Returns a ToolOutput, plain data, or an awaitable of either
ToolFunction = Callable[[Any, ToolContext], Any]


class FunctionTool(Tool):
    """
    Wrap a plain function as a Tool.

    The function receives (args, context). Sync functions run in a worker
    thread. A return value that is not a ToolOutput is treated as
    ToolOutput.ok(value).
    """

    def __init__(
        self,
        name: str,
        func: ToolFunction,
        args_model: type[BaseModel] = EmptyArgs,
        *,
        description: str | None = None,
        authority: str | None = None,
        action: str | None = None,
        table: str | None = None,
        risk: Risk | None = None,
        timeout_seconds: float | None = None,
        describe: Callable[[Any], ActionRequest | None] | None = None,
    ) -> None:
        self._name = name
        self._func = func
        self._description = description
        self._describe = describe
        self.args_model = args_model
        self.authority = authority
        self.action = action
        self.table = table
        self.risk = risk
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description or inspect.getdoc(self._func) or super().description

    def describe_action(self, args: Any) -> ActionRequest | None:
        if self._describe is not None:
            return self._describe(args)
        return super().describe_action(args)

    async def execute(self, args: Any, context: ToolContext) -> ToolOutput:
        if inspect.iscoroutinefunction(self._func):
            result = await self._func(args, context)
        else:
            result = await asyncio.to_thread(self._func, args, context)
            if inspect.isawaitable(result):
                result = await result
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput.ok(result)
