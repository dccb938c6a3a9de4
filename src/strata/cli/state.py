"""
State inspection commands: refresh, state list/show and force-unlock.
"""

from __future__ import annotations

import asyncio

from strata.cli.ux import console, info, print_json, print_table, success, warning
from strata.cli.workspace import open_workspace, resolve_settings
from strata.core.errors import ConfigurationError, ExitCode, main_with_error_handling
from strata.engine.results import DriftRecord
from strata.resources.models import ResourceState
from strata.state.backends import FileStateBackend
from strata.state.store import StateStore


def _load_states(state_path: str | None) -> dict[str, ResourceState]:
    settings = resolve_settings(state_path=state_path)
    return asyncio.run(StateStore(FileStateBackend(settings.state_path)).load())


@main_with_error_handling()
def state_list_command(state_path: str | None = None, output_format: str = "text") -> int:
    states = _load_states(state_path)
    if output_format == "json":
        print_json({name: state.model_dump(mode="json") for name, state in sorted(states.items())})
        return ExitCode.SUCCESS
    if not states:
        info("State is empty")
        return ExitCode.SUCCESS
    rows = [
        [name, state.kind.value, state.identity, state.status.value, state.updated_at.isoformat(timespec="seconds")]
        for name, state in sorted(states.items())
    ]
    print_table("Resources in state", ["Name", "Kind", "Identity", "Last status", "Updated"], rows)
    return ExitCode.SUCCESS


@main_with_error_handling()
def state_show_command(name: str, state_path: str | None = None, output_format: str = "text") -> int:
    states = _load_states(state_path)
    state = states.get(name)
    if state is None:
        raise ConfigurationError(f"No resource named '{name}' in state", {"name": name})
    if output_format == "json":
        print_json(state.model_dump(mode="json"))
        return ExitCode.SUCCESS
    console.print(f"[highlight]{state.kind.value}.{name}[/highlight] ({state.identity})")
    console.print_json(data=state.model_dump(mode="json"))
    return ExitCode.SUCCESS


@main_with_error_handling()
def refresh_command(state_path: str | None = None, output_format: str = "text") -> int:
    """Report drift between state and the provider. Exit 1 when anything drifted."""
    settings = resolve_settings(state_path=state_path)

    async def run() -> list[DriftRecord]:
        async with open_workspace(settings) as workspace:
            return await workspace.runner().refresh()

    records = asyncio.run(run())
    drifted = [record for record in records if record.drifted]
    if output_format == "json":
        print_json({"drifted": len(drifted), "resources": [record.to_dict() for record in records]})
    elif not drifted:
        success(f"{len(records)} resources in sync")
    else:
        for record in drifted:
            warning(f"{record.kind.value}.{record.name} ({record.identity}): {record.status}")
            for field_name, diff in sorted(record.fields.items()):
                console.print(f"    {field_name}: [muted]{diff['recorded']!r}[/muted] -> {diff['remote']!r}")
    return ExitCode.SUCCESS if not drifted else ExitCode.PARTIAL_FAILURE


@main_with_error_handling()
def force_unlock_command(state_path: str | None = None) -> int:
    """Remove a stale state lock left behind by a crashed run."""
    settings = resolve_settings(state_path=state_path)
    backend = FileStateBackend(settings.state_path)
    holder = backend.lock_info()
    if backend.force_unlock():
        warning(f"Removed lock held by run {(holder or {}).get('run_id', 'unknown')}")
    else:
        info("State is not locked")
    return ExitCode.SUCCESS
