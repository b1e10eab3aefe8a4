"""
Tool contract and registry for the agent runtime.
Each tool has an Anthropic-compatible schema and an async execute method;
plain functions are adapted with FunctionTool.
"""

from tools.base import FunctionTool, OutputCallback, Tool, ToolResult, schema_errors  # noqa: F401
from tools.registry import ToolRegistry  # noqa: F401
