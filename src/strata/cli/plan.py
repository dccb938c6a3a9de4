"""
Read-only CLI commands: validate, graph and plan.
"""

from __future__ import annotations

import asyncio
from typing import Any

from strata.cli.ux import ACTION_SYMBOLS, console, header, print_json, success
from strata.cli.workspace import open_workspace, resolve_settings
from strata.core.errors import ExitCode, main_with_error_handling
from strata.declarations import load_declaration
from strata.engine.results import Action, Change
from strata.graph import Intent, build, plan
from strata.resources.validation import validate_all


@main_with_error_handling()
def validate_command(declaration: str, output_format: str = "text") -> int:
    """Check a declaration: attribute literals, references and cycles."""
    specs = load_declaration(declaration)
    validate_all(specs)
    graph = build(specs)
    if output_format == "json":
        print_json({"valid": True, "resources": len(graph), "edges": graph.edge_count()})
    else:
        success(f"{declaration}: {len(graph)} resources, {graph.edge_count()} references")
    return ExitCode.SUCCESS


@main_with_error_handling()
def graph_command(declaration: str, destroy: bool = False, output_format: str = "text") -> int:
    """Print the dependency graph and its execution levels."""
    specs = load_declaration(declaration)
    validate_all(specs)
    graph = build(specs)
    schedule = plan(graph, Intent.DESTROY if destroy else Intent.APPLY)

    if output_format == "json":
        print_json({"graph": graph.to_dict(), "plan": schedule.to_dict()})
        return ExitCode.SUCCESS

    header(f"{schedule.intent.value.title()} order")
    for index, level in enumerate(schedule.levels):
        console.print(f"[highlight]Level {index}[/highlight]")
        for name in level:
            deps = graph.dependencies(name)
            suffix = f" [muted]<- {', '.join(deps)}[/muted]" if deps else ""
            console.print(f"  {graph.get(name).address}{suffix}")
    return ExitCode.SUCCESS


def _format_value(value: Any) -> str:
    text = repr(value)
    return text if len(text) <= 60 else text[:57] + "..."


def print_changes(changes: list[Change], verbose: bool = False) -> None:
    counts = {action: 0 for action in Action}
    for change in changes:
        counts[change.action] += 1
        if change.action is Action.NOOP and not verbose:
            continue
        symbol, style = ACTION_SYMBOLS[change.action.value]
        console.print(f"[{style}]{symbol:>3}[/{style}] {change.kind.value}.{change.name}")
        if change.replace_fields:
            console.print(f"      [error]forces replacement: {', '.join(change.replace_fields)}[/error]")
        for field_name in sorted(change.fields):
            if field_name == "tags" and not verbose:
                continue
            diff = change.fields[field_name]
            console.print(
                f"      {field_name}: [muted]{_format_value(diff['before'])}[/muted]"
                f" -> {_format_value(diff['after'])}"
            )

    console.print()
    console.print(
        f"Plan: [success]{counts[Action.CREATE]} to create[/success], "
        f"[warning]{counts[Action.UPDATE]} to update[/warning], "
        f"[error]{counts[Action.REPLACE]} to replace[/error], "
        f"[error]{counts[Action.DELETE]} to delete[/error], "
        f"{counts[Action.NOOP]} unchanged."
    )


@main_with_error_handling()
def plan_command(
    declaration: str,
    destroy: bool = False,
    prune: bool = False,
    state_path: str | None = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """Show what apply (or destroy) would change without changing anything."""
    specs = load_declaration(declaration)
    settings = resolve_settings(state_path=state_path)

    async def run() -> list[Change]:
        async with open_workspace(settings) as workspace:
            intent = Intent.DESTROY if destroy else Intent.APPLY
            return await workspace.runner().preview(specs, intent, prune=prune)

    changes = asyncio.run(run())
    if output_format == "json":
        print_json({"changes": [change.to_dict() for change in changes]})
    else:
        print_changes(changes, verbose=verbose)
    return ExitCode.SUCCESS
