"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, model_validator

from aido.exceptions import (
    DuplicateToolError,
    PermissionDeniedError,
    ToolArgumentError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from aido.llm import ToolDefinition
from aido.logging import get_logger

log = get_logger(__name__)

ARG_TYPES = ("string", "number", "integer", "boolean", "object", "array")
_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off"}


class ToolStatus(str, Enum):
    """How a tool execution ended."""

    SUCCESS = "success"
    NON_ZERO_EXIT = "non_zero_exit"
    FAILED_TO_START = "failed_to_start"


class ToolResult(BaseModel):
    """Captured outcome of one tool execution."""

    status: ToolStatus = ToolStatus.SUCCESS
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if self.status is not ToolStatus.SUCCESS and not (self.error or "").strip():
            if self.status is ToolStatus.NON_ZERO_EXIT and self.exit_code is not None:
                self.error = f"Exited with code {self.exit_code}"
            else:
                self.error = self.stderr.strip() or "Tool execution failed"
        return self

    @property
    def success(self) -> bool:
        return self.status is ToolStatus.SUCCESS

    def render(self) -> str:
        """Text handed back to the model as the tool message content."""
        if self.status is ToolStatus.FAILED_TO_START:
            return f"Error: failed to start: {self.error}"

        output = self.stdout.strip()
        stderr = self.stderr.strip()
        if stderr:
            output = f"{output}\n[stderr] {stderr}" if output else f"[stderr] {stderr}"

        if self.status is ToolStatus.NON_ZERO_EXIT:
            header = f"Error: {self.error}"
            return f"{header}\n{output}" if output else header
        return output or "[no output]"


def _coerce_value(tool_name: str, arg_name: str, schema: dict[str, Any], value: Any) -> Any:
    """Coerce one argument value to its declared JSON-schema type."""
    kind = str(schema.get("type") or "string")

    def fail(expected: str) -> ToolArgumentError:
        return ToolArgumentError(tool_name, f"argument '{arg_name}' must be {expected}, got {value!r}")

    if kind == "string":
        if isinstance(value, (dict, list)):
            raise fail("a string")
        if isinstance(value, bool):
            coerced: Any = "true" if value else "false"
        else:
            coerced = value if isinstance(value, str) else str(value)
    elif kind == "boolean":
        if isinstance(value, bool):
            coerced = value
        elif isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
            coerced = True
        elif isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
            coerced = False
        else:
            raise fail("a boolean")
    elif kind == "integer":
        if isinstance(value, bool):
            raise fail("an integer")
        if isinstance(value, int):
            coerced = value
        elif isinstance(value, float) and value.is_integer():
            coerced = int(value)
        elif isinstance(value, str):
            try:
                coerced = int(value.strip())
            except ValueError:
                raise fail("an integer") from None
        else:
            raise fail("an integer")
    elif kind == "number":
        if isinstance(value, bool):
            raise fail("a number")
        if isinstance(value, (int, float)):
            coerced = value
        elif isinstance(value, str):
            try:
                coerced = float(value.strip())
            except ValueError:
                raise fail("a number") from None
        else:
            raise fail("a number")
    elif kind == "array":
        if not isinstance(value, list):
            raise fail("an array")
        item_schema = schema.get("items")
        coerced = (
            [_coerce_value(tool_name, arg_name, item_schema, item) for item in value]
            if isinstance(item_schema, dict)
            else list(value)
        )
    elif kind == "object":
        if not isinstance(value, dict):
            raise fail("an object")
        coerced = value
    else:
        coerced = value

    allowed = schema.get("enum")
    if allowed is not None and coerced not in allowed:
        raise ToolArgumentError(
            tool_name,
            f"argument '{arg_name}' must be one of {', '.join(map(str, allowed))}, got {value!r}",
        )
    return coerced


class Tool(ABC):
    """Base class for all tools.

    Subclasses set `name`, `description` and a JSON-schema `parameters`
    object, and implement `execute`.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    requires_confirmation: bool = False
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Validated tool arguments

        Returns:
            ToolResult with captured output and status
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition advertised to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: Any) -> dict[str, Any]:
        """Validate and coerce tool arguments against the schema.

        Args:
            arguments: Decoded arguments from the model

        Returns:
            Coerced argument mapping

        Raises:
            ToolArgumentError if invalid
        """
        if not isinstance(arguments, dict):
            raise ToolArgumentError(self.name, f"arguments must be a JSON object, got {arguments!r}")

        properties: dict[str, Any] = self.parameters.get("properties", {}) or {}
        required: list[str] = self.parameters.get("required", []) or []

        unknown = sorted(key for key in arguments if key not in properties)
        if unknown:
            raise ToolArgumentError(self.name, f"unknown argument(s): {', '.join(unknown)}")

        for field in required:
            if arguments.get(field) is None:
                raise ToolArgumentError(self.name, f"missing required argument: {field}")

        return {
            key: _coerce_value(self.name, key, properties[key], value)
            for key, value in arguments.items()
            if value is not None
        }


class ToolRegistry:
    """Registry of the tools available to the model.

    Filled once at startup; read-only while a conversation runs.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._disabled: set[str] = set()

    def register(self, tool: Tool, enabled: bool = True) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
            enabled: Whether the tool may be exposed to the model

        Raises:
            DuplicateToolError if the name is taken
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)

        log.debug("Registering tool", tool=tool.name, enabled=enabled)
        self._tools[tool.name] = tool
        if not enabled:
            self._disabled.add(tool.name)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def is_enabled(self, name: str) -> bool:
        """Return whether a registered tool is enabled."""
        return name in self._tools and name not in self._disabled

    def lookup(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names, enabled or not."""
        return list(self._tools)

    def enabled_tools(self) -> list[Tool]:
        """Enabled tools in registration order."""
        return [tool for name, tool in self._tools.items() if name not in self._disabled]

    def resolve_allowed(self, names: Iterable[str]) -> list[Tool]:
        """Enabled tools whose names appear in `names`."""
        wanted = set(names)
        return [tool for tool in self.enabled_tools() if tool.name in wanted]

    def get_definitions(self, allowed: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Tool definitions for the model, restricted to `allowed` when given."""
        tools = self.enabled_tools() if allowed is None else self.resolve_allowed(allowed)
        return [tool.get_definition() for tool in tools]

    async def execute(
        self,
        name: str,
        arguments: Any,
        timeout: float | None = None,
    ) -> ToolResult:
        """Validate arguments and execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments as decoded from the model
            timeout: Optional override of the tool's own timeout

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            PermissionDeniedError if tool is disabled
            ToolArgumentError if arguments are invalid
            ToolExecutionError if execution fails or times out
        """
        tool = self.lookup(name)
        if name in self._disabled:
            raise PermissionDeniedError(name, "tool is disabled")

        validated = tool.validate_arguments(arguments)

        timeout_seconds = float(timeout if timeout is not None else tool.timeout_seconds)
        timeout_seconds = max(0.1, timeout_seconds)

        try:
            log.info("Executing tool", tool=name, args=validated)
            result = await asyncio.wait_for(tool.execute(**validated), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {label}s") from None
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, status=result.status.value)
        return result
