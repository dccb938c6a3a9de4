"""
Run orchestration: level-by-level execution of a plan.

Each level is dispatched with ``asyncio.gather`` behind a semaphore that
bounds in-flight provider work. A node whose blocker (a dependency on apply,
a dependent on destroy) did not succeed is skipped, and the skip cascades
because skipped nodes block in turn. Per-node failures never raise; they
are collected in the :class:`RunReport`.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Awaitable, Callable, Iterable, Mapping

import structlog

from strata.config.settings import Settings
from strata.core.errors import (
    ApplyError,
    SchedulerDefectError,
    StateCorruptionError,
    StrataError,
)
from strata.engine.convergence import ConvergenceEngine, Outcome, RetryPolicy
from strata.engine.results import Action, Change, DriftRecord, NodeResult, RunReport
from strata.graph.builder import DependencyGraph, build
from strata.graph.scheduler import Intent, plan, topological_levels
from strata.logging import bind_context, clear_context
from strata.providers.base import ProviderSet
from strata.resources.models import ResourceSpec, ResourceState, ResourceStatus
from strata.resources.validation import validate_all
from strata.state.store import StateStore

logger = structlog.get_logger()

Levels = list[tuple[str, ...]]


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def state_levels(states: Mapping[str, ResourceState], names: Iterable[str]) -> Levels:
    """Destroy order for recorded resources, from the dependencies in state."""
    selected = set(names)
    edges = {name: set(states[name].dependencies) & selected for name in selected}
    return list(reversed(topological_levels(selected, edges)))


def _recorded_dependents(states: Mapping[str, ResourceState], names: Iterable[str]) -> dict[str, list[str]]:
    selected = set(names)
    dependents: dict[str, list[str]] = {name: [] for name in selected}
    for name in sorted(selected):
        for dep in states[name].dependencies:
            if dep in selected:
                dependents[dep].append(name)
    return dependents


class Runner:
    """Applies, destroys, previews and refreshes a set of declared resources."""

    def __init__(
        self,
        providers: ProviderSet,
        store: StateStore,
        *,
        policy: RetryPolicy | None = None,
        concurrency: int = 10,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.providers = providers
        self.store = store
        self.engine = ConvergenceEngine(providers, store, policy)
        self.concurrency = concurrency
        self._cancel = asyncio.Event()

    @classmethod
    def from_settings(cls, providers: ProviderSet, store: StateStore, settings: Settings) -> "Runner":
        return cls(
            providers,
            store,
            policy=RetryPolicy.from_settings(settings),
            concurrency=settings.concurrency,
        )

    def cancel(self) -> None:
        """Stop starting new nodes. In-flight nodes run to completion."""
        if not self._cancel.is_set():
            logger.warning("run_cancel_requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, specs: Iterable[ResourceSpec], *, prune: bool = False) -> RunReport:
        """Converge every declared resource, dependencies first.

        Raises validation and graph errors before any provider call, and
        ``LockContentionError`` if another run holds the state lock.
        """
        specs = list(specs)
        validate_all(specs)
        graph = build(specs)
        schedule = plan(graph, Intent.APPLY)
        report = RunReport(run_id=new_run_id(), intent=Intent.APPLY.value)
        report.levels = [list(level) for level in schedule.levels]
        for name in graph.names():
            report.nodes[name] = NodeResult(name=name, kind=graph.get(name).kind)

        applied: dict[str, ResourceState] = {}

        async def converge(name: str) -> Outcome:
            outcome = await self.engine.apply(graph.get(name), applied)
            if outcome.state is not None:
                applied[name] = outcome.state
            return outcome

        started = time.monotonic()
        log = bind_context(run_id=report.run_id, intent=report.intent)
        try:
            async with self.store.lock(report.run_id, "apply"):
                orphans = sorted(set(self.store.states()) - set(graph.nodes))
                if orphans:
                    if not prune:
                        raise StateCorruptionError(
                            f"State holds {len(orphans)} resource(s) that are no longer declared; "
                            "rerun with prune to delete them",
                            {"orphans": orphans},
                        )
                    await self._prune(orphans, report)
                log.info("run_started", nodes=len(graph), levels=len(schedule.levels), concurrency=self.concurrency)
                await self._execute(schedule.levels, report, graph.dependencies, converge)
        finally:
            report.duration_seconds = time.monotonic() - started
            self._log_finished(log, report)
            clear_context()
        return report

    async def _prune(self, orphans: list[str], report: RunReport) -> None:
        states = self.store.states()
        for name in orphans:
            report.nodes[name] = NodeResult(name=name, kind=states[name].kind)
        dependents = _recorded_dependents(states, orphans)
        logger.info("prune_started", orphans=orphans)
        await self._execute(state_levels(states, orphans), report, dependents.__getitem__, self.engine.destroy)
        report.pruned = sorted(name for name in orphans if report.nodes[name].status is ResourceStatus.DELETED)

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    async def destroy(self, specs: Iterable[ResourceSpec] | None = None) -> RunReport:
        """Delete resources, dependents first.

        With ``specs`` the order comes from the declared graph; without, every
        resource in state is destroyed using its recorded dependencies.
        """
        graph: DependencyGraph | None = None
        if specs is not None:
            specs = list(specs)
            validate_all(specs)
            graph = build(specs)

        report = RunReport(run_id=new_run_id(), intent=Intent.DESTROY.value)
        started = time.monotonic()
        log = bind_context(run_id=report.run_id, intent=report.intent)
        try:
            async with self.store.lock(report.run_id, "destroy"):
                blockers: Callable[[str], list[str]]
                if graph is not None:
                    levels: Levels = list(plan(graph, Intent.DESTROY).levels)
                    blockers = graph.dependents
                    for name in graph.names():
                        report.nodes[name] = NodeResult(name=name, kind=graph.get(name).kind)
                else:
                    states = self.store.states()
                    levels = state_levels(states, states)
                    blockers = _recorded_dependents(states, states).__getitem__
                    for name, state in states.items():
                        report.nodes[name] = NodeResult(name=name, kind=state.kind)
                report.levels = [list(level) for level in levels]
                log.info("run_started", nodes=len(report.nodes), levels=len(levels), concurrency=self.concurrency)
                await self._execute(levels, report, blockers, self.engine.destroy)
        finally:
            report.duration_seconds = time.monotonic() - started
            self._log_finished(log, report)
            clear_context()
        return report

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        levels: Iterable[Iterable[str]],
        report: RunReport,
        blockers: Callable[[str], list[str]],
        work: Callable[[str], Awaitable[Outcome]],
    ) -> None:
        self.engine.attempts.clear()
        semaphore = asyncio.Semaphore(self.concurrency)
        for level in levels:
            if self._cancel.is_set():
                report.cancelled = True
                return
            # Siblings finish before a fatal error propagates, so no state
            # write happens after the lock is released.
            results = await asyncio.gather(
                *(self._run_node(report, name, blockers(name), semaphore, work) for name in level),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        if self._cancel.is_set() and report.not_started:
            report.cancelled = True

    async def _run_node(
        self,
        report: RunReport,
        name: str,
        blockers: list[str],
        semaphore: asyncio.Semaphore,
        work: Callable[[str], Awaitable[Outcome]],
    ) -> None:
        node = report.nodes[name]
        blocked = [other for other in blockers if not report.nodes[other].status.is_success]
        if blocked:
            node.blocked_by = blocked
            node.transition(ResourceStatus.SKIPPED)
            logger.info("node_skipped", resource=name, blocked_by=blocked)
            return

        async with semaphore:
            if self._cancel.is_set():
                report.cancelled = True
                return
            node.transition(ResourceStatus.IN_PROGRESS)
            logger.info("node_apply_started", resource=name, kind=node.kind.value)
            started = time.monotonic()
            try:
                outcome = await work(name)
            except SchedulerDefectError:
                raise
            except StrataError as exc:
                node.error = exc.message
                node.error_type = type(exc).__name__
                node.transition(ResourceStatus.FAILED)
                log_failure = logger.warning if isinstance(exc, ApplyError) else logger.error
                log_failure("node_failed", resource=name, error=exc.message, error_type=node.error_type)
            except Exception as exc:
                node.error = str(exc)
                node.error_type = type(exc).__name__
                node.transition(ResourceStatus.FAILED)
                logger.exception("node_failed_unexpectedly", resource=name)
            else:
                node.action = outcome.action
                if outcome.state is not None:
                    node.identity = outcome.state.identity
                node.transition(outcome.status)
            finally:
                node.attempts = self.engine.attempts[name]
                node.duration_seconds = time.monotonic() - started

    def _log_finished(self, log: structlog.stdlib.BoundLogger, report: RunReport) -> None:
        log.info(
            "run_finished",
            success=report.success,
            succeeded=len(report.succeeded),
            unchanged=len(report.unchanged),
            failed=report.failed,
            skipped=report.skipped,
            not_started=report.not_started,
            cancelled=report.cancelled,
            duration=round(report.duration_seconds, 3),
        )

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    async def preview(
        self,
        specs: Iterable[ResourceSpec],
        intent: Intent = Intent.APPLY,
        *,
        prune: bool = False,
    ) -> list[Change]:
        """Dry run: the change each node would see, in execution order.

        Neither providers nor state are modified. Attributes that depend on
        resources still to be created render as ``(known after apply)``.
        """
        specs = list(specs)
        validate_all(specs)
        graph = build(specs)
        schedule = plan(graph, Intent(intent))
        known = await self.store.load()

        if schedule.intent is Intent.DESTROY:
            return [self._deletion(name, graph.get(name), known.get(name)) for name in schedule.order]

        changes: list[Change] = []
        orphans = sorted(set(known) - set(graph.nodes))
        if orphans:
            if not prune:
                raise StateCorruptionError(
                    f"State holds {len(orphans)} resource(s) that are no longer declared",
                    {"orphans": orphans},
                )
            for level in state_levels(known, orphans):
                changes.extend(self._deletion(name, None, known[name]) for name in level)

        unknown: set[str] = set()
        for name in schedule.order:
            change = await self.engine.preview(graph.get(name), known, frozenset(unknown))
            if change.action in (Action.CREATE, Action.REPLACE):
                unknown.add(name)
            changes.append(change)
        return changes

    @staticmethod
    def _deletion(name: str, spec: ResourceSpec | None, state: ResourceState | None) -> Change:
        if state is not None:
            return Change(name=name, kind=state.kind, action=Action.DELETE, identity=state.identity)
        assert spec is not None
        return Change(name=name, kind=spec.kind, action=Action.NOOP)

    async def refresh(self) -> list[DriftRecord]:
        """Compare every recorded resource with the provider's view."""
        states = await self.store.load()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def check(state: ResourceState) -> DriftRecord:
            async with semaphore:
                return await self.engine.refresh(state)

        records = await asyncio.gather(*(check(states[name]) for name in sorted(states)))
        drifted = [record.name for record in records if record.drifted]
        logger.info("refresh_finished", resources=len(records), drifted=drifted)
        return list(records)
