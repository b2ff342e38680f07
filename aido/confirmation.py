"""Interactive approval of tool calls."""

import asyncio
import json
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from aido.logging import get_logger

log = get_logger(__name__)


def describe_call(tool_name: str, arguments: dict[str, Any] | str) -> str:
    """One-line summary of a tool call shown before asking for approval."""
    if tool_name == "run" and isinstance(arguments, dict) and isinstance(arguments.get("command"), list):
        return "run: " + " ".join(str(part) for part in arguments["command"])
    if isinstance(arguments, dict):
        rendered = ", ".join(f"{key}={json.dumps(value)}" for key, value in arguments.items())
    else:
        rendered = arguments
    return f"{tool_name}({rendered})"


class ConfirmationGate(ABC):
    """Approves or denies tool calls flagged as requiring confirmation."""

    @abstractmethod
    async def confirm(self, tool_name: str, arguments: dict[str, Any] | str) -> bool:
        """Return True when the user approves the call."""
        pass


class AutoApproveGate(ConfirmationGate):
    """Approves everything (`--yes`)."""

    async def confirm(self, tool_name: str, arguments: dict[str, Any] | str) -> bool:
        log.info("Auto-approved tool call", tool=tool_name)
        return True


class DenyAllGate(ConfirmationGate):
    """Denies everything; used when nobody can answer."""

    async def confirm(self, tool_name: str, arguments: dict[str, Any] | str) -> bool:
        log.info("Denied tool call without prompting", tool=tool_name)
        return False


class ConsoleConfirmationGate(ConfirmationGate):
    """Asks on the terminal with a yes/no prompt.

    Without an interactive terminal, or when the optional timeout expires,
    the answer is "no" instead of waiting forever.
    """

    def __init__(
        self,
        console: Console | None = None,
        timeout: float | None = None,
        interactive: bool | None = None,
    ):
        self.console = console or Console(stderr=True)
        self.timeout = timeout
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    def _ask(self) -> bool:
        return Confirm.ask("Run it?", console=self.console, default=False)

    async def _ask_in_thread(self) -> bool:
        """Run the blocking prompt on a daemon thread; an unanswered prompt never delays exit."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[bool] = loop.create_future()

        def resolve(answer: bool | None, error: Exception | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(bool(answer))

        def worker() -> None:
            try:
                answer, error = self._ask(), None
            except Exception as e:
                answer, error = None, e
            try:
                loop.call_soon_threadsafe(resolve, answer, error)
            except RuntimeError:
                # Event loop already closed; nobody is waiting for the answer.
                return

        threading.Thread(target=worker, name="aido-confirm", daemon=True).start()
        return await future

    async def confirm(self, tool_name: str, arguments: dict[str, Any] | str) -> bool:
        if not self.interactive:
            log.warning("No terminal to confirm tool call, denying", tool=tool_name)
            return False

        self.console.print(
            f"[bold yellow]The assistant wants to run:[/bold yellow] {escape(describe_call(tool_name, arguments))}"
        )
        try:
            if self.timeout:
                approved = await asyncio.wait_for(self._ask_in_thread(), timeout=self.timeout)
            else:
                approved = await self._ask_in_thread()
        except asyncio.TimeoutError:
            self.console.print("[dim]No answer, skipping.[/dim]")
            log.info("Confirmation timed out", tool=tool_name, timeout=self.timeout)
            return False
        except EOFError:
            return False

        log.info("Confirmation answered", tool=tool_name, approved=approved)
        return bool(approved)
