"""Tool registry: name lookup and schema export."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from tools.base import FunctionTool, Tool, ToolFunction

logger = logging.getLogger(__name__)

class ToolRegistry:
    """Holds the tools available to a session."""

    def __init__(self, tools: Iterable[Tool] = (), aliases: Optional[Dict[str, str]] = None):
        self._tools: Dict[str, Tool] = {}
        # Model-side names that map onto registered tools
        self.aliases = dict(aliases or {})
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool
        return tool

    def register_function(self, name: str, fn: ToolFunction, **kwargs: Any) -> Tool:
        """Wrap a plain function with FunctionTool and register it."""
        return self.register(FunctionTool(name, fn, **kwargs))

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool:
        """Like resolve, but raises ToolNotFoundError for unknown names."""
        from agent.errors import ToolNotFoundError
        tool = self.resolve(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool not found: '{name}' is not a registered tool.")
        return tool

    def resolve(self, name: str) -> Optional[Tool]:
        """Return the tool for name (or a known alias), or None."""
        tool = self._tools.get(name)
        if tool is None and name in self.aliases:
            tool = self._tools.get(self.aliases[name])
        return tool

    def names(self) -> List[str]:
        return sorted(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        """Tool definitions for the request payload, in registration order"""
        return [tool.definition() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._tools)
