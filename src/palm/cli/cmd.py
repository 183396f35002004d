"""
Command-line interface for palm.

Builds client modules from payload files written by the server and compiles
single expressions for inspection.
"""
# typer relies on function calls used as default values
# pyright: reportCallInDefaultInitializer=false

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, cast

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from palm.codegen import CodegenConfig, generate_module
from palm.env import env
from palm.errors import PalmError
from palm.javascript import compile_expression
from palm.types import PayloadDict

logger = logging.getLogger(__name__)

cli = typer.Typer(
	name="palm",
	help="Palm - traced Python actions compiled to a JavaScript client module",
	no_args_is_help=True,
)


@cli.callback()
def configure(
	log_level: str | None = typer.Option(
		None, "--log-level", help="Level of the palm logger (default: PALM_LOG_LEVEL)"
	),
	strict: bool = typer.Option(
		False, "--strict", help="Fail instead of degrading to non-reactive output"
	),
):
	if log_level:
		env.log_level = log_level
	if strict:
		env.strict = True
	setup_logging(env.log_level)


@cli.command("compile")
def compile_payload(
	payload_file: Path = typer.Argument(..., help="Component payload (JSON)"),
	out: Path | None = typer.Option(
		None, "--out", "-o", help="Write the module here instead of stdout"
	),
	source: str | None = typer.Option(
		None, "--source", help="Source name shown in the module header"
	),
	expose_globals: bool = typer.Option(
		True, "--globals/--no-globals", help="Publish actions on window"
	),
	batch: bool = typer.Option(
		True, "--batch/--no-batch", help="Batch DOM updates per animation frame"
	),
):
	"""Generate the client module for a component payload."""
	console = Console(stderr=True)
	payload = load_payload(payload_file)
	config = CodegenConfig(
		expose_globals=expose_globals,
		batch_updates=batch,
		source_name=source or payload_file.name,
	)
	module = generate_module(payload, config)
	if out is None:
		typer.echo(module, nl=False)
		return
	out.parent.mkdir(parents=True, exist_ok=True)
	out.write_text(module)
	console.log(
		f"✨ [bold green]Wrote[/bold green] [cyan]{out}[/cyan] "
		+ f"[dim]({len(payload['states'])} states, {len(payload['actions'])} actions)[/dim]"
	)


@cli.command("expr")
def compile_expr(
	expression: str = typer.Argument(..., help="Python expression or statement"),
	bind: list[str] = typer.Option(
		[], "--bind", "-b", help="Cell binding as name=cellId, repeatable"
	),
	target: str | None = typer.Option(
		None, "--target", help="Cell read back when the expression cannot compile"
	),
	plain: bool = typer.Option(False, "--plain", help="Print only the JavaScript"),
):
	"""Compile one expression to the JavaScript the client module would run."""
	bindings = parse_bindings(bind)
	compiled = compile_expression(expression, bindings, target=target)
	if plain:
		typer.echo(compiled.code)
		return
	console = Console()
	console.print(Syntax(compiled.code, "javascript", word_wrap=True))
	if compiled.cells:
		console.print(f"[dim]cells:[/dim] {', '.join(sorted(compiled.cells))}")
	if compiled.free_names:
		console.print(f"[dim]free names:[/dim] {', '.join(sorted(compiled.free_names))}")
	if not compiled.structural:
		console.print("[yellow]compiled with the textual fallback[/yellow]")


def setup_logging(level: str) -> None:
	palm_logger = logging.getLogger("palm")
	palm_logger.setLevel(level.upper())
	if not any(isinstance(h, RichHandler) for h in palm_logger.handlers):
		palm_logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))


def parse_bindings(items: list[str]) -> dict[str, str]:
	bindings: dict[str, str] = {}
	for item in items:
		name, sep, slot = item.partition("=")
		if not sep or not name.strip() or not slot.strip():
			raise typer.BadParameter(f"Expected name=cellId, got {item!r}", param_hint="--bind")
		bindings[name.strip()] = slot.strip()
	return bindings


def load_payload(path: Path) -> PayloadDict:
	"""Read and shape-check a payload file."""
	try:
		data: Any = json.loads(path.read_text())
	except FileNotFoundError:
		raise typer.BadParameter(f"{path} does not exist", param_hint="PAYLOAD_FILE") from None
	except json.JSONDecodeError as exc:
		raise typer.BadParameter(f"{path} is not valid JSON: {exc}", param_hint="PAYLOAD_FILE") from None
	if (
		not isinstance(data, dict)
		or not isinstance(data.get("id"), str)
		or not isinstance(data.get("states"), list)
		or not isinstance(data.get("actions"), dict)
	):
		raise typer.BadParameter(
			f"{path} is not a component payload (expected id, states and actions)",
			param_hint="PAYLOAD_FILE",
		)
	data.setdefault("effects", [])
	return cast(PayloadDict, data)


def main():
	"""Main CLI entry point."""
	try:
		cli()
	except PalmError as exc:
		Console(stderr=True).print(f"[bold red]Error:[/bold red] {exc}")
		raise typer.Exit(1) from None
	except Exception:
		console = Console()
		console.print_exception()
		raise typer.Exit(1) from None


if __name__ == "__main__":
	main()
