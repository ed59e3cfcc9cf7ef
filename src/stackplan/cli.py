"""Typer CLI for stackplan."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stackplan.config.loader import load_engine_config, load_stack_config
from stackplan.config.models import EngineConfig, LogFormat, LoggingConfig, StackConfig
from stackplan.config.templates import list_templates, template_path
from stackplan.deploy.runner import StackRunner
from stackplan.errors import ApplyCancelled, ApplyError, StackplanError
from stackplan.observability.logging import configure_logging
from stackplan.plan.types import Action, Plan

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="stackplan", help="Dependency-ordered stack provisioning")

_ACTION_STYLE = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.REPLACE: "magenta",
    Action.DELETE: "red",
}


def _load(
    stack_path: str,
    engine_config: str | None = None,
    log_level: str | None = None,
    log_format: LogFormat | None = None,
) -> tuple[StackConfig, EngineConfig]:
    path = Path(stack_path)
    if not path.exists():
        console.print(f"[red]Stack file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        engine = load_engine_config(Path(engine_config) if engine_config else None)
        engine.logging = LoggingConfig(
            level=log_level or engine.logging.level,
            format=log_format or engine.logging.format,
        )
        configure_logging(engine.logging)
        stack = load_stack_config(path)
    except (StackplanError, FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Config error:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc
    return stack, engine


def _print_plan(plan: Plan) -> None:
    if plan.is_empty:
        console.print(f"[green]No changes[/green] — stack '{plan.stack_name}' is up to date")
        return

    title = "Destroy plan" if plan.destroy else "Plan"
    table = Table(title=f"{title} — {plan.stack_name}")
    table.add_column("Wave", justify="right")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind")
    table.add_column("Reason", style="dim")
    for op in plan.operations:
        style = _ACTION_STYLE[op.action]
        table.add_row(
            str(op.wave),
            f"[{style}]{op.action}[/{style}]",
            op.name,
            op.kind,
            op.reason,
        )
    console.print(table)
    counts = ", ".join(f"{n} to {a}" for a, n in plan.summary().items() if n)
    console.print(f"Plan: {counts}")


def _print_outputs(outputs: dict[str, str]) -> None:
    if not outputs:
        console.print("[dim]No outputs[/dim]")
        return
    table = Table(title="Outputs")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for key, value in outputs.items():
        table.add_row(key, value)
    console.print(table)


def _fail(exc: Exception, prefix: str) -> typer.Exit:
    console.print(f"[red]{prefix}:[/red] {escape(str(exc))}")
    if isinstance(exc, (ApplyError, ApplyCancelled)) and exc.completed:
        console.print(f"  completed before stopping: {', '.join(exc.completed)}")
    return typer.Exit(1)


EngineOption = typer.Option(None, "--engine-config", help="Engine YAML")
LogLevelOption = typer.Option(None, "--log-level", help="Override log level")
LogFormatOption = typer.Option(None, "--log-format", help="console or json")


@app.command()
def validate(
    stack_path: str = typer.Argument(..., help="Path to stack YAML"),
    engine_config: str | None = EngineOption,
    log_level: str | None = LogLevelOption,
    log_format: LogFormat | None = LogFormatOption,
) -> None:
    """Build the resource graph and report validation errors."""
    stack, engine = _load(stack_path, engine_config, log_level, log_format)
    try:
        graph = StackRunner(stack, engine).build()
    except StackplanError as exc:
        raise _fail(exc, "Validation error") from exc

    console.print(f"[green]Valid[/green] — stack={graph.stack_name}")
    console.print(f"  resources: {len(graph)}")
    console.print(f"  edges:     {len(graph.edges)}")
    for name in graph.topological_order():
        node = graph[name]
        deps = ", ".join(node.dependencies) or "-"
        console.print(f"    - {name} ({node.kind}) <- {deps}")
    if graph.outputs:
        console.print(f"  outputs:   {', '.join(graph.outputs)}")


@app.command()
def plan(
    stack_path: str = typer.Argument(..., help="Path to stack YAML"),
    refresh: bool = typer.Option(True, "--refresh/--no-refresh", help="Check state"),
    engine_config: str | None = EngineOption,
    log_level: str | None = LogLevelOption,
    log_format: LogFormat | None = LogFormatOption,
) -> None:
    """Show pending operations."""
    stack, engine = _load(stack_path, engine_config, log_level, log_format)
    runner = StackRunner(stack, engine)
    try:
        result = asyncio.run(runner.plan(refresh=refresh))
    except StackplanError as exc:
        raise _fail(exc, "Plan failed") from exc
    _print_plan(result)


@app.command()
def apply(
    stack_path: str = typer.Argument(..., help="Path to stack YAML"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    engine_config: str | None = EngineOption,
    log_level: str | None = LogLevelOption,
    log_format: LogFormat | None = LogFormatOption,
) -> None:
    """Execute the plan and print stack outputs."""
    stack, engine = _load(stack_path, engine_config, log_level, log_format)
    runner = StackRunner(stack, engine)
    try:
        pending = asyncio.run(runner.plan())
    except StackplanError as exc:
        raise _fail(exc, "Plan failed") from exc

    _print_plan(pending)
    confirm_deletes = yes
    if pending.destructive_names and not yes:
        names = ", ".join(pending.destructive_names)
        if not typer.confirm(f"Delete or replace {names}?"):
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)
        confirm_deletes = True

    try:
        result = asyncio.run(
            runner.apply(
                confirm_deletes=confirm_deletes, plan=pending, handle_signals=True
            )
        )
    except StackplanError as exc:
        raise _fail(exc, "Apply failed") from exc

    console.print(
        f"[green]Apply complete[/green] — {len(result.operations)} operation(s) "
        f"in {result.duration_seconds:.2f}s"
    )
    _print_outputs(result.outputs)


@app.command()
def destroy(
    stack_path: str = typer.Argument(..., help="Path to stack YAML"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    engine_config: str | None = EngineOption,
    log_level: str | None = LogLevelOption,
    log_format: LogFormat | None = LogFormatOption,
) -> None:
    """Tear down every resource in reverse apply order."""
    stack, engine = _load(stack_path, engine_config, log_level, log_format)
    runner = StackRunner(stack, engine)
    try:
        pending = asyncio.run(runner.plan_destroy())
    except StackplanError as exc:
        raise _fail(exc, "Plan failed") from exc

    _print_plan(pending)
    if pending.is_empty:
        return
    if not yes:
        confirm = typer.confirm(f"Destroy all resources of '{stack.stack_name}'?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    try:
        result = asyncio.run(
            runner.destroy(confirm=True, plan=pending, handle_signals=True)
        )
    except StackplanError as exc:
        raise _fail(exc, "Destroy failed") from exc
    console.print(
        f"[green]Destroyed[/green] {len(result.operations)} resource(s) "
        f"of '{stack.stack_name}'"
    )


@app.command()
def outputs(
    stack_path: str = typer.Argument(..., help="Path to stack YAML"),
    engine_config: str | None = EngineOption,
) -> None:
    """Print outputs recorded by the last apply."""
    stack, engine = _load(stack_path, engine_config)
    try:
        values = StackRunner(stack, engine).outputs()
    except StackplanError as exc:
        raise _fail(exc, "State error") from exc
    _print_outputs(values)


@app.command()
def init(
    destination: str = typer.Argument(..., help="Where to write the stack YAML"),
    template: str = typer.Option("pixel_tracking", "--template", help="Template name"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing file"),
) -> None:
    """Write a bundled stack template."""
    if template not in list_templates():
        available = ", ".join(list_templates())
        console.print(f"[red]Unknown template '{template}'[/red] (available: {available})")
        raise typer.Exit(1)
    dest = Path(destination)
    if dest.exists() and not force:
        console.print(f"[red]{dest} already exists[/red] — use --force to overwrite")
        raise typer.Exit(1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(template_path(template), dest)
    console.print(f"[green]Wrote[/green] {template} template to {dest}")
