"""Recipe parsing and loading.

A recipe is a `<name>.recipe` file made of an optional YAML front matter
block and a free-text body::

    ---
    name: do
    allowed_tools: [ls]
    ---
    You are a command-line assistant.

    <example_1>
    user: please untar the file
    assistant: <runs `ls *.tar.gz`>
    tool: my_file.tar.gz
    assistant: tar -xzf my_file.tar.gz
    </example_1>

The body becomes the system prompt; `<example_N>` blocks are lifted out of it
and replayed as few-shot messages when a conversation is seeded.
"""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from aido.exceptions import (
    RecipeFormatError,
    RecipeNotFoundError,
    UnknownRecipeToolError,
)
from aido.llm import Message
from aido.logging import get_logger
from aido.tools.registry import ToolRegistry

log = get_logger(__name__)

RECIPE_SUFFIX = ".recipe"

# Opening dashes at the very start, header, closing dashes on their own line, body.
HEADER_RE = re.compile(r"(?s)^(-{3,})\s*\n(.*?)\n(-{3,})\s*\n(.*)$")
EXAMPLE_BLOCK_RE = re.compile(r"<(example[\w-]*)>(.*?)</\1>", re.DOTALL | re.IGNORECASE)
EXAMPLES_HEADING_RE = re.compile(r"\n#+[ \t]*examples?[ \t]*$", re.IGNORECASE)
TURN_RE = re.compile(r"^(user|assistant|tool)[ \t]*:[ \t]?(.*)$", re.IGNORECASE)
PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class RecipeHeader(BaseModel):
    """Front matter of a recipe file."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    description: str = ""
    allowed_tools: list[str] = []

    @field_validator("name", "description", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @classmethod
    def parse(cls, content: str) -> "RecipeHeader":
        """Parse YAML front matter; anything that is not a mapping yields an empty header."""
        if not content.strip():
            return cls()
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            log.debug("Recipe header is not YAML, ignoring", error=str(e))
            return cls()
        if not isinstance(data, dict):
            return cls()
        try:
            return cls(**data)
        except ValidationError as e:
            raise RecipeFormatError(f"Invalid recipe header: {e}") from e


@dataclass(frozen=True)
class ExampleTurn:
    """One line-group of a few-shot example."""

    role: str  # "user", "assistant", "tool"
    content: str


@dataclass
class Recipe:
    """A named system prompt with examples and a tool allow-list."""

    name: str
    system_prompt: str
    allowed_tools: list[str] = field(default_factory=list)
    examples: list[list[ExampleTurn]] = field(default_factory=list)
    description: str = ""
    path: Path | None = None

    def render_system_prompt(self, **variables: object) -> str:
        """Substitute `{cwd}`, `{date}`, `{os}`, `{shell}` and any extra variables."""
        values: dict[str, str] = {
            "cwd": os.getcwd(),
            "date": date.today().isoformat(),
            "os": platform.system(),
            "shell": os.environ.get("SHELL", ""),
        }
        values.update({key: str(value) for key, value in variables.items()})
        return PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), self.system_prompt)

    def example_messages(self) -> list[Message]:
        """Few-shot messages; tool turns are folded into the preceding assistant turn."""
        messages: list[Message] = []
        for example in self.examples:
            for turn in example:
                if turn.role == "user":
                    messages.append(Message.user(turn.content))
                elif turn.role == "assistant":
                    messages.append(Message.assistant(turn.content))
                elif messages and messages[-1].role == "assistant":
                    previous = messages.pop()
                    messages.append(
                        Message.assistant(f"{previous.content}\n[tool output]\n{turn.content}")
                    )
                else:
                    messages.append(Message.user(f"[tool output]\n{turn.content}"))
        return messages

    def seed_messages(self, **variables: object) -> list[Message]:
        """System message plus example messages that open a new conversation."""
        seed: list[Message] = []
        prompt = self.render_system_prompt(**variables)
        if prompt.strip():
            seed.append(Message.system(prompt))
        seed.extend(self.example_messages())
        return seed


@dataclass(frozen=True)
class RecipeInfo:
    """Information about a recipe file."""

    name: str
    display_name: str
    description: str = ""


def parse_examples(body: str) -> tuple[str, list[list[ExampleTurn]]]:
    """Split `<example_N>` blocks out of a recipe body.

    Returns:
        Body without example blocks, and the parsed examples in order
    """
    examples: list[list[ExampleTurn]] = []
    for match in EXAMPLE_BLOCK_RE.finditer(body):
        turns: list[ExampleTurn] = []
        for line in match.group(2).strip().splitlines():
            turn = TURN_RE.match(line.strip())
            if turn:
                turns.append(ExampleTurn(role=turn.group(1).lower(), content=turn.group(2).strip()))
            elif turns:
                last = turns[-1]
                turns[-1] = ExampleTurn(role=last.role, content=f"{last.content}\n{line}".strip())
        if turns:
            examples.append(turns)

    remaining = EXAMPLE_BLOCK_RE.sub("", body)
    remaining = re.sub(r"\n{3,}", "\n\n", remaining).strip()
    remaining = EXAMPLES_HEADING_RE.sub("", remaining).strip()
    return remaining, examples


def parse_recipe(content: str, default_name: str = "") -> Recipe:
    """Parse a recipe from its file content.

    Raises:
        RecipeFormatError if the content is empty or the header is invalid
    """
    if not content.strip():
        raise RecipeFormatError("Recipe content is empty")

    match = HEADER_RE.match(content)
    if match:
        header = RecipeHeader.parse(match.group(2))
        body = match.group(4).strip()
    else:
        header = RecipeHeader()
        body = content

    system_prompt, examples = parse_examples(body)
    return Recipe(
        name=header.name or default_name,
        system_prompt=system_prompt,
        allowed_tools=list(dict.fromkeys(header.allowed_tools)),
        examples=examples,
        description=header.description,
    )


class RecipeStore:
    """Loads recipes from a directory and checks them against the tool registry."""

    def __init__(
        self,
        recipes_dir: Path | str,
        registry: ToolRegistry,
        strict_tools: bool = True,
    ):
        self.recipes_dir = Path(recipes_dir).expanduser()
        self.registry = registry
        self.strict_tools = strict_tools

    def path_for(self, name: str) -> Path:
        """Resolve the file of a recipe, rejecting names that escape the directory."""
        key = (name or "").strip()
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise RecipeNotFoundError(name)
        return self.recipes_dir / f"{key}{RECIPE_SUFFIX}"

    def get_content(self, name: str) -> str:
        """Get the raw content of a recipe file."""
        path = self.path_for(name)
        if not path.is_file():
            raise RecipeNotFoundError(name)
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise RecipeFormatError(f"Recipe file is not valid UTF-8: {path}") from e

    def list(self) -> list[RecipeInfo]:
        """List every recipe in the directory, sorted by file name."""
        if not self.recipes_dir.is_dir():
            return []

        recipes: list[RecipeInfo] = []
        for path in sorted(self.recipes_dir.glob(f"*{RECIPE_SUFFIX}")):
            if not path.is_file():
                continue
            name = path.stem
            try:
                recipe = parse_recipe(path.read_text(encoding="utf-8"), default_name=name)
            except (OSError, UnicodeDecodeError, RecipeFormatError) as e:
                log.warning("Unreadable recipe", recipe=name, error=str(e))
                recipes.append(RecipeInfo(name=name, display_name=name))
                continue
            recipes.append(
                RecipeInfo(name=name, display_name=recipe.name or name, description=recipe.description)
            )
        return recipes

    def load(self, name: str) -> Recipe:
        """Parse and validate a recipe by name.

        Raises:
            RecipeNotFoundError if no such file exists
            RecipeFormatError if it cannot be parsed
            UnknownRecipeToolError if it allows a tool the registry cannot provide
        """
        content = self.get_content(name)
        recipe = parse_recipe(content, default_name=name)
        recipe.path = self.path_for(name)
        self.validate(recipe)
        log.info("Loaded recipe", recipe=recipe.name, allowed_tools=recipe.allowed_tools)
        return recipe

    def validate(self, recipe: Recipe) -> None:
        """Check the allow-list against the registry, dropping disabled tools when lenient."""
        usable: list[str] = []
        for tool_name in recipe.allowed_tools:
            if not self.registry.has_tool(tool_name):
                raise UnknownRecipeToolError(recipe.name, tool_name)
            if not self.registry.is_enabled(tool_name):
                if self.strict_tools:
                    raise UnknownRecipeToolError(recipe.name, tool_name, reason="disabled tool")
                log.warning("Recipe allows disabled tool, ignoring", recipe=recipe.name, tool=tool_name)
                continue
            usable.append(tool_name)
        recipe.allowed_tools = usable
