"""Built-in command tools."""

import glob
from typing import Any

from aido.tools.command import CommandTool
from aido.tools.registry import ToolResult, ToolStatus


class LsTool(CommandTool):
    """List files, expanding glob patterns without a shell."""

    name = "ls"
    description = (
        "List files in the current directory. "
        "Accepts an optional glob pattern such as '*.tar.gz'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "File name or glob pattern to list (default: current directory)",
            },
            "long": {
                "type": "boolean",
                "description": "Use the long listing format",
            },
            "all": {
                "type": "boolean",
                "description": "Include hidden entries",
            },
        },
        "required": [],
    }

    def build_argv(
        self,
        pattern: str | None = None,
        long: bool = False,
        all: bool = False,
        **kwargs: Any,
    ) -> list[str]:
        argv = ["ls", "-1"]
        if long:
            argv.append("-l")
        if all:
            argv.append("-a")
        if pattern:
            root = str(self.cwd) if self.cwd is not None else None
            matches = sorted(glob.glob(pattern, root_dir=root))
            # No match: hand the literal to ls so it reports the missing file.
            argv.append("--")
            argv.extend(matches or [pattern])
        return argv


class CatTool(CommandTool):
    """Print a file."""

    name = "cat"
    description = "Print the contents of a text file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file",
            },
        },
        "required": ["path"],
    }

    def build_argv(self, path: str, **kwargs: Any) -> list[str]:
        return ["cat", "--", path]


class GrepTool(CommandTool):
    """Search file contents."""

    name = "grep"
    description = "Search files for lines matching a regular expression."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Regular expression to search for",
            },
            "path": {
                "type": "string",
                "description": "File or directory to search (default: current directory)",
            },
            "recursive": {
                "type": "boolean",
                "description": "Search directories recursively (default when no path is given)",
            },
            "ignore_case": {
                "type": "boolean",
                "description": "Case-insensitive matching",
            },
        },
        "required": ["pattern"],
    }

    def build_argv(
        self,
        pattern: str,
        path: str | None = None,
        recursive: bool | None = None,
        ignore_case: bool = False,
        **kwargs: Any,
    ) -> list[str]:
        if recursive is None:
            recursive = path is None
        argv = ["grep", "-n"]
        if recursive:
            argv.append("-r")
        if ignore_case:
            argv.append("-i")
        argv.extend(["--", pattern, path or "."])
        return argv

    async def execute(self, **kwargs: Any) -> ToolResult:
        result = await super().execute(**kwargs)
        # grep exits 1 when nothing matched; that is an answer, not a failure.
        if result.status is ToolStatus.NON_ZERO_EXIT and result.exit_code == 1 and not result.stderr.strip():
            return ToolResult(status=ToolStatus.SUCCESS, stdout="[no matches]", exit_code=1)
        return result


class RunTool(CommandTool):
    """Run an arbitrary executable."""

    name = "run"
    description = (
        "Run a program with arguments, e.g. [\"git\", \"status\"]. "
        "No shell is involved: pipes, globs and redirects are not interpreted."
    )
    requires_confirmation = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Program followed by its arguments",
            },
        },
        "required": ["command"],
    }

    def build_argv(self, command: list[str], **kwargs: Any) -> list[str]:
        return list(command)
