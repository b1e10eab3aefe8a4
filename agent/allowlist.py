"""
Session allow-list: tools and remote servers the user approved "always".
"""

import logging
import threading
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class SessionAllowList:
    """Approval memory for one interactive session.

    Keys are ``tool:<name>`` or ``server:<name>``. Reads and writes are
    serialized, so an approval recorded by one batch is seen by every later
    confirmation check.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._approved: set = set()

    @staticmethod
    def _approval_key(kind: str, name: str) -> str:
        return f"{kind}:{name}"

    def allow_tool(self, tool_name: str) -> None:
        """Remember that the user approved every call of this tool."""
        with self._lock:
            self._approved.add(self._approval_key("tool", tool_name))
        logger.info(f"Tool added to session allow-list: {tool_name}")

    def allow_server(self, server_name: str) -> None:
        """Remember that the user approved every tool from this server."""
        with self._lock:
            self._approved.add(self._approval_key("server", server_name))
        logger.info(f"Server added to session allow-list: {server_name}")

    def is_allowed(self, tool_name: str, server_name: Optional[str] = None) -> bool:
        with self._lock:
            if self._approval_key("tool", tool_name) in self._approved:
                return True
            return bool(server_name) and self._approval_key("server", server_name) in self._approved

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            keys = sorted(self._approved)
        return {
            "tools": [k.split(":", 1)[1] for k in keys if k.startswith("tool:")],
            "servers": [k.split(":", 1)[1] for k in keys if k.startswith("server:")],
        }
