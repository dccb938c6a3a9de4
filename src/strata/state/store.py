"""
State store: the only shared mutable resource of a run.

Holds the last applied :class:`ResourceState` of every resource. Writes go
through an ``asyncio.Lock`` and always persist the complete state set, so a
failed write leaves the previous consistent document in place and the
in-memory view unchanged.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import pydantic
import structlog

from strata.core.errors import StateCorruptionError
from strata.resources.models import ResourceState
from strata.state.backends import StateBackend, lock_payload

logger = structlog.get_logger()

STATE_VERSION = 1


def parse_document(document: dict[str, Any] | None) -> tuple[dict[str, ResourceState], int]:
    """Turn a persisted document into states keyed by name plus its serial."""
    if document is None:
        return {}, 0
    if not isinstance(document, dict):
        raise StateCorruptionError("State document must be a JSON object")
    version = document.get("version")
    if version != STATE_VERSION:
        raise StateCorruptionError(
            f"Unsupported state version {version!r}",
            {"expected": STATE_VERSION},
        )
    resources = document.get("resources", {})
    if not isinstance(resources, dict):
        raise StateCorruptionError("State 'resources' must be a mapping")

    states: dict[str, ResourceState] = {}
    for name, raw in resources.items():
        try:
            state = ResourceState.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise StateCorruptionError(
                f"State entry '{name}' is invalid: {exc.error_count()} error(s)",
                {"resource": name},
            ) from exc
        if state.name != name:
            raise StateCorruptionError(
                f"State entry '{name}' records name '{state.name}'",
                {"resource": name},
            )
        states[name] = state
    return states, int(document.get("serial", 0))


def render_document(states: Mapping[str, ResourceState], serial: int) -> dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "serial": serial,
        "resources": {name: states[name].model_dump(mode="json") for name in sorted(states)},
    }


class StateStore:
    """Lock-guarded record of what currently exists."""

    def __init__(self, backend: StateBackend) -> None:
        self._backend = backend
        self._states: dict[str, ResourceState] = {}
        self._serial = 0
        self._write_lock = asyncio.Lock()
        self._run_id: str | None = None

    @property
    def backend(self) -> StateBackend:
        return self._backend

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def locked(self) -> bool:
        return self._run_id is not None

    @asynccontextmanager
    async def lock(self, run_id: str, operation: str = "apply") -> AsyncIterator["StateStore"]:
        """Hold the backend's exclusive lock for the duration of a run.

        Raises ``LockContentionError`` immediately if another run holds it.
        """
        await asyncio.to_thread(self._backend.acquire, lock_payload(run_id, operation))
        self._run_id = run_id
        try:
            await self.load()
            yield self
        finally:
            self._run_id = None
            await asyncio.to_thread(self._backend.release, run_id)
            logger.debug("state_lock_released", run_id=run_id)

    async def load(self) -> dict[str, ResourceState]:
        document = await asyncio.to_thread(self._backend.read)
        self._states, self._serial = parse_document(document)
        return dict(self._states)

    def get(self, name: str) -> ResourceState | None:
        return self._states.get(name)

    def states(self) -> dict[str, ResourceState]:
        return dict(self._states)

    async def save(self, states: Mapping[str, ResourceState]) -> None:
        """Persist the full state set atomically."""
        async with self._write_lock:
            await self._persist(dict(states))

    async def record(self, state: ResourceState) -> None:
        async with self._write_lock:
            updated = dict(self._states)
            updated[state.name] = state
            await self._persist(updated)

    async def forget(self, name: str) -> None:
        async with self._write_lock:
            if name not in self._states:
                return
            updated = dict(self._states)
            del updated[name]
            await self._persist(updated)

    async def _persist(self, states: dict[str, ResourceState]) -> None:
        if not self.locked:
            raise RuntimeError("State store must be locked before writing")
        serial = self._serial + 1
        await asyncio.to_thread(self._backend.write, render_document(states, serial))
        self._states = states
        self._serial = serial
