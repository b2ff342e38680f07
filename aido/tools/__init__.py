"""Tools package for aido."""

from aido.config import Config, get_config
from aido.tools.builtin import CatTool, GrepTool, LsTool, RunTool
from aido.tools.command import CommandTool, ConfiguredCommandTool, run_command
from aido.tools.registry import Tool, ToolRegistry, ToolResult, ToolStatus

BUILTIN_TOOLS: tuple[type[CommandTool], ...] = (LsTool, CatTool, GrepTool, RunTool)


def build_tool_registry(config: Config | None = None) -> ToolRegistry:
    """Build the registry from built-in tools and config-declared tools.

    Raises:
        DuplicateToolError if two tools share a name
    """
    cfg = config or get_config()
    tools_cfg = cfg.tools
    confirm = set(tools_cfg.require_confirmation)
    enabled = set(tools_cfg.enabled)

    registry = ToolRegistry()
    for tool_cls in BUILTIN_TOOLS:
        registry.register(
            tool_cls(
                timeout_seconds=tools_cfg.timeout,
                max_output_chars=tools_cfg.max_output_chars,
                requires_confirmation=tool_cls.name in confirm,
            ),
            enabled=tool_cls.name in enabled,
        )

    for tool_config in tools_cfg.custom:
        registry.register(
            ConfiguredCommandTool(
                tool_config,
                timeout_seconds=tools_cfg.timeout,
                max_output_chars=tools_cfg.max_output_chars,
                requires_confirmation=tool_config.name in confirm,
            ),
            enabled=tool_config.enabled,
        )
    return registry


__all__ = [
    "BUILTIN_TOOLS",
    "CatTool",
    "CommandTool",
    "ConfiguredCommandTool",
    "GrepTool",
    "LsTool",
    "RunTool",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "ToolStatus",
    "build_tool_registry",
    "run_command",
]
