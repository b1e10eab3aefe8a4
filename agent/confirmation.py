"""
Confirmation collaborators: who answers "may this tool call run?".
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax

from config import AppConfig, app_config

from .types import ConfirmationOutcome, ConfirmationRequest

logger = logging.getLogger(__name__)


class Confirmer(ABC):
    """Asks the user to approve a tool call"""

    @abstractmethod
    async def ask(self, request: ConfirmationRequest) -> ConfirmationOutcome:
        pass


class Modifier(ABC):
    """Lets the user edit a call's arguments before it runs"""

    @abstractmethod
    async def modify(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        pass


class AutoApproveConfirmer(Confirmer):
    """YOLO mode: every request proceeds once, nothing is remembered."""

    async def ask(self, request: ConfirmationRequest) -> ConfirmationOutcome:
        logger.info(f"Auto-approved {request.tool_name} ({request.call_id})")
        return ConfirmationOutcome.PROCEED_ONCE


_CHOICES = {
    "y": ConfirmationOutcome.PROCEED_ONCE,
    "a": ConfirmationOutcome.PROCEED_ALWAYS,
    "s": ConfirmationOutcome.PROCEED_ALWAYS_SERVER,
    "m": ConfirmationOutcome.MODIFY_THEN_PROCEED,
    "n": ConfirmationOutcome.CANCEL,
}


class ConsoleConfirmer(Confirmer):
    """Prompt on the terminal with rich. The blocking prompt runs in a worker thread."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        # One prompt on screen at a time even when several calls wait
        self._lock = asyncio.Lock()

    def _prompt(self, request: ConfirmationRequest) -> ConfirmationOutcome:
        self.console.print(Panel(
            Syntax(request.details or "{}", "json", word_wrap=True),
            title=f"[bold]{request.title or request.tool_name}[/bold]",
            subtitle=f"server: {request.server_name}" if request.server_name else None,
        ))
        choices = ["y", "a", "m", "n"]
        if request.server_name:
            choices.insert(2, "s")
        answer = Prompt.ask(
            "Run it? [y]es once / [a]lways this tool"
            + (" / always this [s]erver" if request.server_name else "")
            + " / [m]odify / [n]o",
            choices=choices,
            default="y",
            console=self.console,
        )
        return _CHOICES[answer]

    async def ask(self, request: ConfirmationRequest) -> ConfirmationOutcome:
        async with self._lock:
            return await asyncio.to_thread(self._prompt, request)


class ConsoleModifier(Modifier):
    """Ask for replacement arguments as JSON; an empty answer keeps the current ones."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def _prompt(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        self.console.print(Syntax(json.dumps(args, indent=2, default=str), "json"))
        while True:
            raw = Prompt.ask(f"New arguments for {tool_name} (JSON, blank to keep)",
                             default="", console=self.console)
            if not raw.strip():
                return dict(args)
            try:
                new_args = json.loads(raw)
            except json.JSONDecodeError as e:
                self.console.print(f"[red]Invalid JSON: {e}[/red]")
                continue
            if isinstance(new_args, dict):
                return new_args
            self.console.print("[red]Arguments must be a JSON object[/red]")

    async def modify(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._prompt, tool_name, args)


def build_confirmer(config: Optional[AppConfig] = None, console: Optional[Console] = None) -> Confirmer:
    cfg = config or app_config
    if cfg.auto_approve_commands:
        logger.warning("AUTO_APPROVE_COMMANDS is on: tool calls run without confirmation")
        return AutoApproveConfirmer()
    return ConsoleConfirmer(console)
