"""
Tool registry for Steward.

The registry maps tool names to tool instances. It is an ordinary object
built once at startup and handed to the dispatcher; there is no module-level
registry, so tests and tenants can each use their own.

Usage:
    registry = ToolRegistry()
    registry.register(CreateInvoiceTool())
    registry.register_function("list_leads", list_leads, ListLeadsArgs, authority="READ_LEADS")

    dispatcher = ToolDispatcher(registry)
"""

import logging
from collections.abc import Callable, Iterable
from typing import Any, Iterator

from pydantic import BaseModel

from steward.errors import ToolNotFoundError
from steward.schema import ActionRequest, Risk
from steward.tools.base import EmptyArgs, FunctionTool, Tool, ToolFunction

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Registry for looking up tools by name.

    Attributes:
        _tools: Internal mapping of tool names to tool instances
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        """Initialize a registry, optionally with tools."""
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        """
        Register a tool in the registry.

        Re-registering a name replaces the earlier tool and logs a warning.

        Args:
            tool: The tool instance to register

        Returns:
            The registered tool

        Raises:
            ValueError: If tool is None or has an empty name
        """
        if tool is None:
            msg = "Cannot register None as a tool"
            raise ValueError(msg)

        name = tool.name
        if not name:
            msg = "Tool must have a non-empty name"
            raise ValueError(msg)

        if name in self._tools:
            logger.warning("Replacing registered tool %s", name)

        self._tools[name] = tool
        return tool

    def register_function(
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
    ) -> Tool:
        """
        Register a plain sync or async function as a tool.

        See FunctionTool for how the function is called.
        """
        return self.register(
            FunctionTool(
                name,
                func,
                args_model,
                description=description,
                authority=authority,
                action=action,
                table=table,
                risk=risk,
                timeout_seconds=timeout_seconds,
                describe=describe,
            )
        )

    def get(self, name: str) -> Tool:
        """
        Look up a tool by name.

        Raises:
            ToolNotFoundError: If no tool with that name is registered
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(tool=name)
        return tool

    def get_optional(self, name: str) -> Tool | None:
        """Look up a tool by name, returning None if not found."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def unregister(self, name: str) -> bool:
        """
        Remove a tool from the registry.

        Returns:
            True if the tool was removed, False if it wasn't registered
        """
        if name in self._tools:
            del self._tools[name]
            return True
        return False

    def clear(self) -> None:
        """Remove all tools from the registry."""
        self._tools.clear()

    def list_tools(self) -> list[str]:
        """List all registered tool names in sorted order."""
        return sorted(self._tools.keys())

    def function_specs(self) -> list[dict[str, Any]]:
        """
        OpenAI-style function specs for every registered tool.

        Each entry is {"type": "function", "function": {name, description,
        parameters}} with parameters taken from the tool's args_model JSON
        schema. Sorted by tool name.
        """
        return [self._tools[name].function_spec() for name in self.list_tools()]

    def __len__(self) -> int:
        """Return the number of registered tools."""
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        """Iterate over all registered tools."""
        return iter(self._tools.values())

    def __contains__(self, name: str) -> bool:
        """Check if a tool is registered using 'in' operator."""
        return name in self._tools

    def __repr__(self) -> str:
        """String representation of the registry."""
        tools = ", ".join(self.list_tools())
        return f"<ToolRegistry: [{tools}]>"
