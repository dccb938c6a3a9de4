"""
Per-resource reconciliation.

For each node the engine resolves references against resources already
applied in this run, reads the remote resource, diffs it against the
desired attributes and invokes create, update, replace or nothing.
Provider calls are retried with exponential backoff on transient errors
and each attempt is counted per node.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from strata.config.settings import Settings
from strata.core.errors import (
    ResourceNotFoundError,
    SchedulerDefectError,
    TransientProviderError,
    UnresolvedAttributeError,
)
from strata.engine.results import Action, Change, DriftRecord
from strata.providers.base import (
    IDEMPOTENCY_TAG,
    NAME_TAG,
    ProviderSet,
    ResourceProvider,
    idempotency_token,
)
from strata.resources.models import (
    Reference,
    ResourceSpec,
    ResourceState,
    ResourceStatus,
    resolve_value,
)
from strata.state.store import StateStore

logger = structlog.get_logger()

T = TypeVar("T")

KNOWN_AFTER_APPLY = "(known after apply)"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for provider calls."""

    max_attempts: int = 5
    backoff_multiplier: float = 0.5
    backoff_max: float = 30.0
    call_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_multiplier=settings.backoff_multiplier,
            backoff_max=settings.backoff_max,
            call_timeout=settings.call_timeout,
        )


@dataclass(frozen=True)
class Outcome:
    status: ResourceStatus
    action: Action
    state: ResourceState | None = None


def diff_attributes(desired: Mapping[str, Any], current: Mapping[str, Any] | None) -> dict[str, Any]:
    """Per-field differences for the keys the declaration sets."""
    current = current or {}
    changes: dict[str, Any] = {}
    for key, value in desired.items():
        before = current.get(key)
        if before != value:
            changes[key] = {"before": before, "after": value}
    return changes


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConvergenceEngine:
    """Drives one resource at a time towards its declared state."""

    def __init__(
        self,
        providers: ProviderSet,
        store: StateStore,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._providers = providers
        self._store = store
        self.policy = policy or RetryPolicy()
        self.attempts: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Attribute resolution
    # ------------------------------------------------------------------

    def desired_attributes(
        self,
        spec: ResourceSpec,
        applied: Mapping[str, ResourceState],
        *,
        generation: int = 0,
        unknown: frozenset[str] | None = None,
    ) -> dict[str, Any]:
        """Resolve references and attach the system tags.

        With ``unknown`` set (dry runs), references to those resources or to
        resources missing from ``applied`` render as ``KNOWN_AFTER_APPLY``.
        """

        def lookup(ref: Reference) -> Any:
            if unknown is not None and (ref.target in unknown or ref.target not in applied):
                return KNOWN_AFTER_APPLY
            state = applied.get(ref.target)
            if state is None:
                raise SchedulerDefectError(
                    f"'{spec.name}' started before its dependency '{ref.target}' was applied",
                    {"resource": spec.name, "reference": str(ref)},
                )
            try:
                return state.produced(ref.attribute)
            except KeyError:
                raise UnresolvedAttributeError(
                    f"'{ref.target}' does not produce attribute '{ref.attribute}'",
                    {"resource": spec.name, "reference": str(ref)},
                ) from None

        attributes = resolve_value(dict(spec.attributes), lookup)
        tags = dict(attributes.get("tags") or {})
        tags.update(spec.tags)
        tags[NAME_TAG] = spec.name
        tags[IDEMPOTENCY_TAG] = idempotency_token(spec.name, generation)
        attributes["tags"] = tags
        return attributes

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _log_retry(self, name: str, operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "provider_call_retry",
                resource=name,
                operation=operation,
                attempt=retry_state.attempt_number,
                sleep=retry_state.next_action.sleep if retry_state.next_action else 0,
                error=str(error),
            )

        return before_sleep

    async def _call(
        self,
        name: str,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Invoke a provider operation with timeout and transient retry."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.backoff_multiplier, max=self.policy.backoff_max),
            before_sleep=self._log_retry(name, operation),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self.attempts[name] += 1
                try:
                    result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.policy.call_timeout)
                except asyncio.TimeoutError as exc:
                    raise TransientProviderError(
                        f"{operation} timed out after {self.policy.call_timeout}s",
                        {"resource": name, "operation": operation},
                    ) from exc
        return result

    async def _delete(self, name: str, provider: ResourceProvider, identity: str) -> None:
        try:
            await self._call(name, "delete", provider.delete, identity)
        except ResourceNotFoundError:
            logger.info("resource_already_absent", resource=name, identity=identity)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _decide(
        self,
        spec: ResourceSpec,
        previous: ResourceState | None,
        current: Mapping[str, Any] | None,
        desired: Mapping[str, Any],
        provider: ResourceProvider,
    ) -> tuple[Action, dict[str, Any], list[str]]:
        if previous is None or current is None:
            return Action.CREATE, diff_attributes(desired, current), []
        changes = diff_attributes(desired, current)
        if previous.kind != spec.kind:
            return Action.REPLACE, changes, ["kind"]
        if not changes:
            return Action.NOOP, changes, []
        forcing = sorted(set(changes) & provider.replace_fields)
        if forcing:
            return Action.REPLACE, changes, forcing
        return Action.UPDATE, changes, []

    async def _current(self, name: str, previous: ResourceState | None) -> Mapping[str, Any] | None:
        if previous is None:
            return None
        provider = self._providers.for_kind(previous.kind)
        return await self._call(name, "read", provider.read, previous.identity)

    async def preview(
        self,
        spec: ResourceSpec,
        known: Mapping[str, ResourceState],
        unknown: frozenset[str],
    ) -> Change:
        """Compute the change ``apply`` would make, without making it."""
        previous = known.get(spec.name)
        provider = self._providers.for_kind(spec.kind)
        generation = previous.generation if previous else 0
        desired = self.desired_attributes(spec, known, generation=generation, unknown=unknown)
        current = await self._current(spec.name, previous)
        action, changes, forcing = self._decide(spec, previous, current, desired, provider)
        return Change(
            name=spec.name,
            kind=spec.kind,
            action=action,
            fields=changes,
            replace_fields=forcing,
            identity=previous.identity if previous else None,
        )

    # ------------------------------------------------------------------
    # Apply / destroy
    # ------------------------------------------------------------------

    async def apply(self, spec: ResourceSpec, applied: Mapping[str, ResourceState]) -> Outcome:
        """Converge one resource. Raises ``ApplyError`` on failure."""
        log = logger.bind(resource=spec.name, kind=spec.kind.value)
        started = time.monotonic()
        previous = self._store.get(spec.name)
        provider = self._providers.for_kind(spec.kind)
        generation = previous.generation if previous else 0
        desired = self.desired_attributes(spec, applied, generation=generation)
        current = await self._current(spec.name, previous)
        action, changes, forcing = self._decide(spec, previous, current, desired, provider)
        log.info("node_plan", action=action.value, changed=sorted(changes), forcing=forcing)

        if action is Action.NOOP:
            assert previous is not None
            dependencies = spec.dependencies()
            state = previous.model_copy(
                update={
                    "status": ResourceStatus.UNCHANGED,
                    "attributes": desired,
                    "dependencies": dependencies,
                }
            )
            # Recorded dependencies order destroys without a declaration.
            if previous.attributes != desired or previous.dependencies != dependencies:
                await self._store.record(state)
            return Outcome(ResourceStatus.UNCHANGED, action, state)

        if action is Action.UPDATE:
            assert previous is not None
            produced = await self._call(spec.name, "update", provider.update, previous.identity, desired)
            outputs = {**previous.outputs, **produced}
            status = ResourceStatus.UPDATED
            identity = previous.identity
        else:
            if previous is not None:
                generation += 1
                desired = self.desired_attributes(spec, applied, generation=generation)
            if action is Action.REPLACE:
                assert previous is not None
                old_provider = self._providers.for_kind(previous.kind)
                log.info("node_replacing", identity=previous.identity, forcing=forcing)
                await self._delete(spec.name, old_provider, previous.identity)
            token = idempotency_token(spec.name, generation)
            created = await self._call(
                spec.name, "create", provider.create, desired, idempotency_token=token
            )
            identity = created.identity
            outputs = {"id": identity, **created.outputs}
            status = ResourceStatus.CREATED

        state = ResourceState(
            name=spec.name,
            kind=spec.kind,
            identity=identity,
            attributes=desired,
            outputs=outputs,
            dependencies=spec.dependencies(),
            generation=generation,
            status=status,
            updated_at=_utcnow(),
        )
        await self._store.record(state)
        log.info(
            "node_applied",
            status=status.value,
            identity=identity,
            attempts=self.attempts[spec.name],
            duration=round(time.monotonic() - started, 3),
        )
        return Outcome(status, action, state)

    async def destroy(self, name: str) -> Outcome:
        """Delete a resource recorded in state. Never-created resources are a no-op."""
        previous = self._store.get(name)
        if previous is None:
            return Outcome(ResourceStatus.UNCHANGED, Action.NOOP)
        provider = self._providers.for_kind(previous.kind)
        await self._delete(name, provider, previous.identity)
        await self._store.forget(name)
        logger.info("node_deleted", resource=name, identity=previous.identity)
        return Outcome(ResourceStatus.DELETED, Action.DELETE)

    async def refresh(self, state: ResourceState) -> DriftRecord:
        """Compare a recorded resource with what the provider reports."""
        current = await self._current(state.name, state)
        if current is None:
            return DriftRecord(state.name, state.kind, state.identity, "missing")
        changes = {
            key: {"recorded": diff["after"], "remote": diff["before"]}
            for key, diff in diff_attributes(state.attributes, current).items()
        }
        return DriftRecord(
            state.name,
            state.kind,
            state.identity,
            "changed" if changes else "in_sync",
            changes,
        )
