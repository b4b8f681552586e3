"""
Tool dispatch boundary for Steward.

The dispatcher takes a tool call as the planning layer produced it (a tool
name and raw JSON arguments), runs it, and always returns a ToolCallResult.
Nothing a tool or its arguments can do makes dispatch raise; only task
cancellation propagates.

Dispatch Flow:
    1. Parse raw arguments (missing or empty means {})   -> bad_json_args
    2. Resolve the tool in the injected registry         -> unknown_tool
    3. Validate arguments against the tool's args_model   -> invalid_args
    4. Invoke under a timeout                             -> "<tool> timed out after <n>s"
    5. Convert the outcome:
        - ToolOutput.ok(data)     -> ok=True, data
        - ToolOutput.denied(why)  -> ok=False, denied=True, error=why
        - ToolOutput.fail(err)    -> ok=False, error=err
        - exception               -> ok=False, error=message, stack (3 frames)
        - ok(None) / ok([])       -> ok=False with an explanatory error

Design Principles:
    - Failures are data: callers branch on result.ok, never on exceptions
    - Business denial and infrastructure failure stay distinguishable
    - Errors are truncated and stacks capped before leaving the boundary
"""

import asyncio
import json
import logging
import traceback
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from steward.errors import (
    ApprovalRequiredError,
    ArgumentParseError,
    AuthorityDeniedError,
    PolicyDeniedError,
    ToolExecutionError,
    ToolTimeoutError,
)
from steward.schema import MAX_STACK_FRAMES, ToolCallRequest, ToolCallResult
from steward.tools.base import OutputKind, Tool, ToolContext, ToolOutput
from steward.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0

ERROR_BAD_JSON_ARGS = "bad_json_args"
ERROR_UNKNOWN_TOOL = "unknown_tool"
ERROR_INVALID_ARGS = "invalid_args"


@dataclass(frozen=True)
class PreparedCall:
    """
    A tool call whose arguments parsed and validated.

    Attributes:
        tool: The resolved tool
        args: Instance of the tool's args_model
        raw_args: The parsed JSON object, as received
        call_id: Identifier from the planning layer
    """

    tool: Tool
    args: BaseModel
    raw_args: dict[str, Any]
    call_id: str | None = None

    @property
    def name(self) -> str:
        return self.tool.name


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def _stack_frames(exc: BaseException) -> list[str]:
    """Innermost frames of an exception's traceback, innermost first."""
    frames = traceback.extract_tb(exc.__traceback__)
    innermost = list(reversed(frames))[:MAX_STACK_FRAMES]
    return [f"{frame.filename}:{frame.lineno} in {frame.name}" for frame in innermost]


def _error_message(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


def _refusal_reason(exc: AuthorityDeniedError | PolicyDeniedError | ApprovalRequiredError) -> str:
    """The guardrail reason behind a refusal a tool raised from its body."""
    if isinstance(exc, AuthorityDeniedError):
        return exc.message
    return exc.reason or exc.message


class ToolDispatcher:
    """
    Runs tool calls against an injected registry.

    Usage:
        dispatcher = ToolDispatcher(registry, timeout_seconds=10)
        result = await dispatcher.dispatch(
            ToolCallRequest(tool_name="list_leads", raw_args='{"status": "new"}'),
            ToolContext(tenant_id="studio-1", actor_id="owner"),
        )
        if not result.ok:
            print(result.error)

    Attributes:
        registry: Tools available to this dispatcher
        timeout_seconds: Default per-call timeout (a tool's own wins)
        surface_empty_results: Report ok(None) / ok([]) as failures
    """

    def __init__(
        self,
        registry: ToolRegistry,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        surface_empty_results: bool = True,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.surface_empty_results = surface_empty_results

    # =========================================================================
    # Preparation
    # =========================================================================

    def parse_args(self, request: ToolCallRequest) -> dict[str, Any] | ToolCallResult:
        """Parse raw arguments into a JSON object, or a bad_json_args result."""
        raw = request.raw_args
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return {}
        if isinstance(raw, Mapping):
            return dict(raw)

        # Deeply nested text exhausts the decoder's recursion limit
        try:
            parsed = json.loads(raw)
        except (ValueError, TypeError, RecursionError) as e:
            return ToolCallResult.failure(
                ERROR_BAD_JSON_ARGS,
                tool=request.tool_name,
                args=raw,
                detail=str(e) or type(e).__name__,
                call_id=request.call_id,
            )

        if not isinstance(parsed, dict):
            return ToolCallResult.failure(
                ERROR_BAD_JSON_ARGS,
                tool=request.tool_name,
                args=raw,
                detail=f"arguments must be a JSON object, got {type(parsed).__name__}",
                call_id=request.call_id,
            )
        return parsed

    def validate_args(self, tool: Tool, args: dict[str, Any]) -> BaseModel:
        """
        Validate parsed arguments against a tool's args_model.

        Raises:
            ArgumentParseError: If the arguments do not match the model
        """
        try:
            return tool.args_model.model_validate(args)
        except ValidationError as e:
            raise ArgumentParseError(
                tool=tool.name,
                tool_args=args,
                validation_error=_format_validation_error(e),
            ) from e

    def prepare(self, request: ToolCallRequest) -> PreparedCall | ToolCallResult:
        """
        Parse, resolve and validate a call without running it.

        Returns:
            PreparedCall, or the failed ToolCallResult describing why not
        """
        parsed = self.parse_args(request)
        if isinstance(parsed, ToolCallResult):
            logger.warning("Bad JSON arguments for %s: %s", request.tool_name, parsed.detail)
            return parsed

        tool = self.registry.get_optional(request.tool_name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", request.tool_name)
            return ToolCallResult.failure(
                ERROR_UNKNOWN_TOOL,
                tool=request.tool_name,
                args=parsed,
                call_id=request.call_id,
            )

        try:
            args = self.validate_args(tool, parsed)
        except ArgumentParseError as e:
            logger.warning("Invalid arguments for %s: %s", tool.name, e.validation_error)
            return ToolCallResult.failure(
                e.error_kind,
                tool=tool.name,
                args=parsed,
                detail=e.validation_error,
                call_id=request.call_id,
            )

        return PreparedCall(tool=tool, args=args, raw_args=parsed, call_id=request.call_id)

    # =========================================================================
    # Invocation
    # =========================================================================

    def _timeout_for(self, tool: Tool) -> float:
        return tool.timeout_seconds if tool.timeout_seconds is not None else self.timeout_seconds

    def _to_result(self, call: PreparedCall, output: ToolOutput) -> ToolCallResult:
        name = call.name
        if output.kind is OutputKind.DENIED:
            return ToolCallResult.failure(
                output.error or f"{name} denied",
                tool=name,
                args=call.raw_args,
                denied=True,
                call_id=call.call_id,
            )
        if output.kind is OutputKind.FAIL:
            return ToolCallResult.failure(
                output.error or f"{name} failed",
                tool=name,
                args=call.raw_args,
                call_id=call.call_id,
            )

        data = output.data
        if self.surface_empty_results:
            if data is None:
                logger.info("%s returned no data", name)
                return ToolCallResult.failure(
                    f"{name} returned no data - check database records and query parameters",
                    tool=name,
                    args=call.raw_args,
                    call_id=call.call_id,
                )
            if isinstance(data, (list, tuple)) and len(data) == 0:
                logger.info("%s returned an empty list", name)
                return ToolCallResult.failure(
                    f"{name} found no matching records - database may be empty or filters too restrictive",
                    tool=name,
                    args=call.raw_args,
                    call_id=call.call_id,
                )

        logger.debug(
            "%s returned %s",
            name,
            f"{len(data)} items" if isinstance(data, (list, tuple)) else type(data).__name__,
        )
        return ToolCallResult.success(data, tool=name, call_id=call.call_id)

    async def invoke(self, call: PreparedCall, context: ToolContext) -> tuple[ToolCallResult, ToolOutput | None]:
        """
        Run a prepared call under its timeout.

        Returns:
            (result, output). output is the tool's ToolOutput when the tool
            returned one, None when it raised or timed out.
        """
        timeout = self._timeout_for(call.tool)
        logger.debug("Invoking %s with %s", call.name, call.raw_args)
        try:
            async with asyncio.timeout(timeout) as scope:
                output = await call.tool.execute(call.args, context)
        except asyncio.CancelledError:
            raise
        except (AuthorityDeniedError, PolicyDeniedError, ApprovalRequiredError) as e:
            reason = _refusal_reason(e)
            logger.info("%s refused: %s", call.name, reason)
            return (
                ToolCallResult.failure(
                    reason,
                    tool=call.name,
                    args=call.raw_args,
                    denied=True,
                    call_id=call.call_id,
                ),
                None,
            )
        except TimeoutError as e:
            if scope.expired():
                error = ToolTimeoutError(tool=call.name, tool_args=call.raw_args, timeout_seconds=timeout)
                logger.warning(error.message)
                return (
                    ToolCallResult.failure(
                        error.message,
                        tool=call.name,
                        args=call.raw_args,
                        call_id=call.call_id,
                    ),
                    None,
                )
            return self._from_exception(call, e), None
        except Exception as e:
            return self._from_exception(call, e), None

        if not isinstance(output, ToolOutput):
            output = ToolOutput.ok(output)
        return self._to_result(call, output), output

    def _from_exception(self, call: PreparedCall, exc: Exception) -> ToolCallResult:
        if isinstance(exc, ToolExecutionError):
            error = exc
        else:
            error = ToolExecutionError(
                tool=call.name,
                tool_args=call.raw_args,
                underlying_error=_error_message(exc),
            )
        logger.warning("%s (%s)", error.message, type(exc).__name__)
        return ToolCallResult.failure(
            error.underlying_error or error.message,
            tool=call.name,
            args=call.raw_args,
            stack=_stack_frames(exc),
            call_id=call.call_id,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def dispatch(self, request: ToolCallRequest, context: ToolContext) -> ToolCallResult:
        """
        Prepare and run one tool call.

        Never raises except for task cancellation.

        Args:
            request: Tool name and raw arguments
            context: Tenant, actor and policy for the call

        Returns:
            ToolCallResult describing the outcome
        """
        prepared = self.prepare(request)
        if isinstance(prepared, ToolCallResult):
            return prepared
        result, _ = await self.invoke(prepared, context)
        return result

    async def dispatch_many(
        self,
        requests: Sequence[ToolCallRequest],
        context: ToolContext,
    ) -> list[ToolCallResult]:
        """Run a batch of calls concurrently; results keep request order."""
        return list(await asyncio.gather(*(self.dispatch(r, context) for r in requests)))


def surface_tool_errors(results: Iterable[ToolCallResult]) -> str | None:
    """
    Summarize failed results for the agent, one line per failure.

    Returns:
        Lines like "❌ create_invoice: bad_json_args", or None if all succeeded
    """
    lines = [f"❌ {r.tool}: {r.error}" for r in results if not r.ok]
    if not lines:
        return None
    return "\n".join(lines)
