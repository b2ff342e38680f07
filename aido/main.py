"""Main entry point for aido."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from aido import __version__
from aido.config import Config, set_config
from aido.confirmation import AutoApproveGate, ConfirmationGate, ConsoleConfirmationGate
from aido.conversation import ConversationStore
from aido.engine import Engine, TurnResult
from aido.exceptions import ConfigError, ConversationNotFoundError
from aido.llm import create_provider
from aido.logging import configure_logging, log
from aido.recipe import Recipe, RecipeStore
from aido.tools import build_tool_registry
from aido.tools.registry import ToolRegistry

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG_ERROR = 2

app = typer.Typer(help="aido - do things with AI in your terminal", add_completion=False)
err_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"aido v{__version__}")
        raise typer.Exit()


def _fail(message: str, code: int) -> typer.Exit:
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    return typer.Exit(code)


def _read_prompt(words: list[str] | None, input_file: Path | None) -> str:
    """Join prompt words, the input file and piped stdin into one request."""
    parts: list[str] = []
    if words:
        parts.append(" ".join(words))
    if input_file is not None:
        parts.append(input_file.read_text(encoding="utf-8"))
    if not parts and not sys.stdin.isatty():
        parts.append(sys.stdin.read())
    return "\n\n".join(part.strip() for part in parts if part.strip())


def _print_recipes(store: RecipeStore) -> None:
    recipes = store.list()
    if not recipes:
        err_console.print(f"No recipes in {store.recipes_dir}")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Recipe")
    table.add_column("Description")
    for info in recipes:
        label = info.name if info.display_name == info.name else f"{info.name} ({info.display_name})"
        table.add_row(escape(label), escape(info.description))
    Console().print(table)


async def _execute(
    cfg: Config,
    registry: ToolRegistry,
    recipe: Recipe | None,
    user_input: str,
    continue_latest: bool,
    gate: ConfirmationGate,
    verbose: bool,
) -> TurnResult:
    provider = create_provider(cfg.model)
    store = ConversationStore(cfg.conversation.path)

    def on_status(status: str) -> None:
        log.debug("Status", status=status)

    def on_tool_output(tool_name: str, content: str) -> None:
        if verbose:
            err_console.print(f"[dim]{escape(tool_name)}:[/dim] {escape(content)}")

    def on_chunk(chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    engine = Engine.from_config(
        cfg.engine,
        provider,
        registry,
        store,
        gate,
        streaming=cfg.model.streaming,
        on_chunk=on_chunk,
        status_callback=on_status,
        tool_output_callback=on_tool_output,
    )
    try:
        if continue_latest:
            return await engine.continue_latest(user_input)
        if recipe is not None:
            return await engine.run_recipe(recipe, user_input)
        return await engine.run_prompt(user_input)
    finally:
        await provider.close()
        await store.close()


@app.command()
def main(
    prompt: Optional[list[str]] = typer.Argument(None, help="What you want done"),
    recipe: str = typer.Option("", "-r", "--recipe", help="Recipe to run"),
    continue_: bool = typer.Option(False, "-c", "--continue", help="Continue the latest conversation"),
    input_file: Optional[Path] = typer.Option(None, "-i", "--input", help="Read the request from a file"),
    config: str = typer.Option("", "--config", help="Path to config file"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Run tools without asking for confirmation"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", min=1, help="Override the turn limit"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    list_recipes: bool = typer.Option(False, "--list-recipes", help="List available recipes"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    """Turn a request into an answer, running local tools when the recipe allows."""
    if config and not Path(config).expanduser().is_file():
        raise _fail(f"Config file not found: {config}", EXIT_CONFIG_ERROR)
    try:
        cfg = Config.load(config or None)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        raise _fail(f"Failed to load config: {e}", EXIT_CONFIG_ERROR) from e

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    if max_turns is not None:
        cfg.engine.max_turns = max_turns

    try:
        registry = build_tool_registry(cfg)
    except ConfigError as e:
        raise _fail(str(e), EXIT_CONFIG_ERROR) from e

    recipes = RecipeStore(cfg.recipes_dir(), registry, strict_tools=cfg.recipes.strict_tools)
    if list_recipes:
        _print_recipes(recipes)
        return

    if recipe and continue_:
        raise _fail("--recipe and --continue cannot be combined", EXIT_CONFIG_ERROR)

    try:
        user_input = _read_prompt(prompt, input_file)
    except OSError as e:
        raise _fail(f"Cannot read input: {e}", EXIT_CONFIG_ERROR) from e
    if not user_input:
        raise _fail("Nothing to do: pass a request, --input FILE or pipe text in", EXIT_CONFIG_ERROR)

    loaded: Recipe | None = None
    if recipe:
        try:
            loaded = recipes.load(recipe)
        except ConfigError as e:
            raise _fail(str(e), EXIT_CONFIG_ERROR) from e

    gate: ConfirmationGate = (
        AutoApproveGate() if yes else ConsoleConfirmationGate(console=err_console, timeout=cfg.ui.confirm_timeout)
    )

    try:
        result = asyncio.run(_execute(cfg, registry, loaded, user_input, continue_, gate, verbose))
    except ConversationNotFoundError as e:
        raise _fail(str(e), EXIT_ABORTED) from e
    except ConfigError as e:
        raise _fail(str(e), EXIT_CONFIG_ERROR) from e
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        raise _fail("Interrupted", EXIT_ABORTED) from None

    if result.ok:
        if cfg.model.streaming:
            typer.echo("")
        else:
            typer.echo(result.answer or "")
        return

    err_console.print(
        f"[bold red]{result.outcome.value.capitalize()}:[/bold red] "
        f"{escape(result.reason or '')} {escape(result.detail)}".rstrip()
    )
    raise typer.Exit(EXIT_ABORTED)


def run() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    run()
