"""
CLI commands that change infrastructure: apply and destroy.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Awaitable, Callable

import structlog

from strata.cli.ux import STATUS_STYLES, console, error, print_json, success, warning
from strata.cli.workspace import open_workspace, resolve_settings
from strata.core.errors import ExitCode, main_with_error_handling
from strata.declarations import load_declaration
from strata.engine.results import RunReport
from strata.engine.runner import Runner

logger = structlog.get_logger()


def print_report(report: RunReport, verbose: bool = False) -> None:
    """Print a per-node summary of a run."""
    console.print()
    for name in [name for level in report.levels for name in level]:
        node = report.nodes[name]
        if node.status.value == "unchanged" and not verbose:
            continue
        style = STATUS_STYLES[node.status.value]
        detail = ""
        if node.error:
            detail = f" [muted]{node.error_type}: {node.error}[/muted]"
        elif node.blocked_by:
            detail = f" [muted]blocked by {', '.join(node.blocked_by)}[/muted]"
        elif node.attempts > 1:
            detail = f" [muted]({node.attempts} attempts)[/muted]"
        console.print(f"  [{style}]{node.status.value:<10}[/{style}] {node.kind.value}.{name}{detail}")

    for name in report.pruned:
        console.print(f"  [success]{'pruned':<10}[/success] {report.nodes[name].kind.value}.{name}")

    console.print()
    summary = (
        f"{len(report.succeeded)} changed, {len(report.unchanged)} unchanged, "
        f"{len(report.failed)} failed, {len(report.skipped)} skipped"
    )
    if report.not_started:
        summary += f", {len(report.not_started)} not started"
    duration = f" in {report.duration_seconds:.1f}s"
    if report.success:
        success(f"{report.intent.title()} complete: {summary}{duration}")
    elif report.cancelled:
        warning(f"{report.intent.title()} cancelled: {summary}{duration}")
    else:
        error(f"{report.intent.title()} finished with errors: {summary}{duration}")


async def _run_cancellable(runner: Runner, run: Callable[[], Awaitable[RunReport]]) -> RunReport:
    """First Ctrl-C stops new nodes from starting; in-flight ones finish."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runner.cancel)
    except NotImplementedError:
        logger.debug("signal_handlers_unsupported")
        return await run()
    try:
        return await run()
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _finish(report: RunReport, output_format: str, verbose: bool) -> int:
    if output_format == "json":
        print_json(report.to_dict())
    else:
        print_report(report, verbose=verbose)
    return ExitCode.SUCCESS if report.success else ExitCode.PARTIAL_FAILURE


@main_with_error_handling()
def apply_command(
    declaration: str,
    prune: bool = False,
    concurrency: int | None = None,
    state_path: str | None = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """
    Converge infrastructure to the declaration.

    Returns:
        Exit code (0 when every node succeeded, 1 on partial failure)
    """
    specs = load_declaration(declaration)
    settings = resolve_settings(concurrency=concurrency, state_path=state_path)

    async def run() -> RunReport:
        async with open_workspace(settings) as workspace:
            runner = workspace.runner()
            return await _run_cancellable(runner, lambda: runner.apply(specs, prune=prune))

    return _finish(asyncio.run(run()), output_format, verbose)


@main_with_error_handling()
def destroy_command(
    declaration: str | None = None,
    concurrency: int | None = None,
    state_path: str | None = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """Destroy declared resources, or everything in state without a declaration."""
    specs = load_declaration(declaration) if declaration else None
    settings = resolve_settings(concurrency=concurrency, state_path=state_path)

    async def run() -> RunReport:
        async with open_workspace(settings) as workspace:
            runner = workspace.runner()
            return await _run_cancellable(runner, lambda: runner.destroy(specs))

    return _finish(asyncio.run(run()), output_format, verbose)
