"""
Tools module for Steward.

Steward ships no business tools of its own. Applications implement Tool
subclasses (or plain functions) for their CRUD operations and register
them in a ToolRegistry that is passed to the dispatcher.

Architecture:
    - Tool: Abstract base class defining the tool interface
    - FunctionTool: Wraps a plain function as a Tool
    - ToolRegistry: Explicit name -> tool mapping (no global instance)
    - ToolContext: Runtime context passed to tools (tenant, actor, policy)
    - ToolOutput: Explicit ok / denied / fail result

Guardrail enforcement happens BEFORE tool execution, in the governor.
"""

from steward.tools.base import EmptyArgs, FunctionTool, OutputKind, Tool, ToolContext, ToolOutput
from steward.tools.registry import ToolRegistry

__all__ = [
    "EmptyArgs",
    "FunctionTool",
    "OutputKind",
    "Tool",
    "ToolContext",
    "ToolOutput",
    "ToolRegistry",
]
