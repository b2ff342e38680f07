"""Subprocess-backed tools."""

import asyncio
import re
from abc import abstractmethod
from pathlib import Path
from typing import Any

from aido.config import CommandToolConfig
from aido.logging import get_logger
from aido.tools.registry import Tool, ToolResult, ToolStatus

log = get_logger(__name__)

DEFAULT_MAX_OUTPUT_CHARS = 10000
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def _decode_output(raw: bytes, max_chars: int) -> str:
    """Decode captured bytes into line-oriented text, truncating long output."""
    text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n")
    if len(text) > max_chars:
        text = text[:max_chars] + f"\n... [truncated, {len(text)} total chars]"
    return text


async def run_command(
    argv: list[str],
    cwd: Path | str | None = None,
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
) -> ToolResult:
    """Run an executable with an argument vector and capture its output.

    Cancelling the awaiting task kills the child process.
    """
    if not argv:
        return ToolResult(status=ToolStatus.FAILED_TO_START, error="Empty command")

    log.debug("Starting process", argv=argv)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as e:
        log.warning("Process failed to start", argv=argv, error=str(e))
        return ToolResult(status=ToolStatus.FAILED_TO_START, error=str(e))

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise

    exit_code = process.returncode
    return ToolResult(
        status=ToolStatus.SUCCESS if exit_code == 0 else ToolStatus.NON_ZERO_EXIT,
        stdout=_decode_output(stdout, max_output_chars),
        stderr=_decode_output(stderr, max_output_chars),
        exit_code=exit_code,
    )


class CommandTool(Tool):
    """A tool that maps its arguments onto a local executable invocation."""

    def __init__(
        self,
        timeout_seconds: float | None = None,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        requires_confirmation: bool | None = None,
        cwd: Path | str | None = None,
    ):
        if timeout_seconds is not None:
            self.timeout_seconds = float(timeout_seconds)
        if requires_confirmation is not None:
            self.requires_confirmation = requires_confirmation
        self.max_output_chars = max_output_chars
        self.cwd = cwd

    @abstractmethod
    def build_argv(self, **kwargs: Any) -> list[str]:
        """Translate validated arguments into an argument vector."""
        pass

    async def execute(self, **kwargs: Any) -> ToolResult:
        argv = self.build_argv(**kwargs)
        return await run_command(argv, cwd=self.cwd, max_output_chars=self.max_output_chars)


class ConfiguredCommandTool(CommandTool):
    """Command tool declared in the config file.

    Each element of the `command` template may reference arguments as
    `{name}`. An element naming an absent argument is dropped; an element that
    is exactly `{name}` for an array argument expands to one element per item.
    """

    def __init__(
        self,
        tool_config: CommandToolConfig,
        timeout_seconds: float | None = None,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        requires_confirmation: bool = False,
    ):
        super().__init__(
            timeout_seconds=tool_config.timeout if tool_config.timeout is not None else timeout_seconds,
            max_output_chars=max_output_chars,
            requires_confirmation=tool_config.requires_confirmation or requires_confirmation,
        )
        self.name = tool_config.name
        self.description = tool_config.description
        self.template = list(tool_config.command)
        self.parameters = self._build_parameters(tool_config)

    @staticmethod
    def _build_parameters(tool_config: CommandToolConfig) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for arg in tool_config.args:
            entry: dict[str, Any] = {"type": arg.type, "description": arg.description}
            if arg.type == "array":
                entry["items"] = {"type": "string"}
            if arg.enum is not None:
                entry["enum"] = list(arg.enum)
            properties[arg.name] = entry
            if arg.required:
                required.append(arg.name)
        return {"type": "object", "properties": properties, "required": required}

    @staticmethod
    def _render_scalar(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def build_argv(self, **kwargs: Any) -> list[str]:
        argv: list[str] = []
        for element in self.template:
            names = _PLACEHOLDER_RE.findall(element)
            if not names:
                argv.append(element)
                continue
            if any(kwargs.get(name) is None for name in names):
                continue

            whole = _PLACEHOLDER_RE.fullmatch(element)
            if whole and isinstance(kwargs[whole.group(1)], list):
                argv.extend(self._render_scalar(item) for item in kwargs[whole.group(1)])
                continue

            argv.append(
                _PLACEHOLDER_RE.sub(lambda m: self._render_scalar(kwargs[m.group(1)]), element)
            )
        return argv
