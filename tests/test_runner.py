"""Tests for engine/runner.py, including the ECS/ALB scenarios."""

import pytest

from factories import FAST_RETRY, cluster, network, subnet
from strata.core.errors import (
    CycleError,
    LockContentionError,
    SchedulerDefectError,
    StateCorruptionError,
    TerminalProviderError,
    ValidationError,
)
from strata.engine import KNOWN_AFTER_APPLY, Action, NodeResult, RunReport, Runner
from strata.graph import Intent
from strata.providers.base import NAME_TAG
from strata.providers.memory import InMemoryCloud
from strata.resources.models import Reference, ResourceKind, ResourceSpec, ResourceStatus
from strata.state.store import StateStore


class TestApply:
    @pytest.mark.asyncio
    async def test_creates_everything(self, runner, ecs_specs, cloud, store):
        report = await runner.apply(ecs_specs)

        assert report.success
        assert report.succeeded == sorted(spec.name for spec in ecs_specs)
        assert len(cloud.resources) == len(ecs_specs)
        assert report.levels[0] == ["ecs_cluster", "task_execution_role", "vpc"]
        listener = store.get("http_listener")
        assert listener.attributes["load_balancer_arn"] == store.get("alb").outputs["arn"]
        service = store.get("web_service")
        assert service.attributes["subnets"] == [store.get("subnet_ecs").identity]

    @pytest.mark.asyncio
    async def test_dependencies_complete_before_dependents_start(self, runner, ecs_specs, cloud):
        await runner.apply(ecs_specs)
        order = [call.name for call in cloud.calls if call.operation == "create"]
        assert order.index("vpc") < order.index("subnet_alb")
        assert order.index("http_listener") < order.index("web_service")
        assert order.index("web_task") < order.index("web_service")

    @pytest.mark.asyncio
    async def test_terminal_failure_skips_dependents_only(self, runner, ecs_specs, cloud):
        cloud.fail("create", name="ecs_sg", error=TerminalProviderError, message="access denied")

        report = await runner.apply(ecs_specs)

        assert not report.success
        assert report.failed == ["ecs_sg"]
        assert report.status_of("web_service") is ResourceStatus.SKIPPED
        assert report.nodes["web_service"].blocked_by == ["ecs_sg"]
        assert report.status_of("http_listener") is ResourceStatus.CREATED
        assert report.nodes["ecs_sg"].error == "access denied"
        assert report.nodes["ecs_sg"].error_type == "TerminalProviderError"
        assert report.nodes["ecs_sg"].attempts == 1
        assert cloud.find("web_service") is None

    @pytest.mark.asyncio
    async def test_skips_cascade(self, runner, cloud):
        cloud.fail("create", name="vpc", error=TerminalProviderError)
        assoc = ResourceSpec(
            ResourceKind.ASSOCIATION, "assoc", {"subnet_id": Reference("a"), "route_table_id": "rtb-x"}
        )
        specs = [network(), subnet("a"), cluster(), assoc]

        report = await runner.apply(specs)

        assert report.failed == ["vpc"]
        assert report.skipped == ["a", "assoc"]
        assert report.nodes["assoc"].blocked_by == ["a"]
        assert report.succeeded == ["cluster"]

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, runner, ecs_specs, cloud):
        cloud.fail("create", name="alb", times=2)

        report = await runner.apply(ecs_specs)

        assert report.success
        assert report.status_of("alb") is ResourceStatus.CREATED
        assert report.nodes["alb"].attempts == 3
        assert len(cloud.calls_for(name="alb", operation="create")) == 3

    @pytest.mark.asyncio
    async def test_second_apply_is_a_noop(self, runner, ecs_specs, cloud, backend):
        await runner.apply(ecs_specs)
        writes = backend.writes

        report = await runner.apply(ecs_specs)

        assert report.success
        assert report.unchanged == sorted(spec.name for spec in ecs_specs)
        assert report.succeeded == []
        assert backend.writes == writes
        assert {call.operation for call in cloud.calls[-len(ecs_specs):]} == {"read"}

    @pytest.mark.asyncio
    async def test_replacement_propagates_new_identity(self, runner, cloud, store):
        specs = [network(), subnet("a")]
        await runner.apply(specs)
        old_vpc = store.get("vpc").identity

        report = await runner.apply([network(cidr="10.1.0.0/16"), subnet("a")])

        assert report.nodes["vpc"].action is Action.REPLACE
        assert store.get("vpc").identity != old_vpc
        assert store.get("a").attributes["network_id"] == store.get("vpc").identity
        assert report.nodes["a"].action is Action.REPLACE

    @pytest.mark.asyncio
    async def test_validation_happens_before_provider_calls(self, runner, cloud):
        bad = ResourceSpec(ResourceKind.NETWORK, "vpc", {"cidr_block": "nope"})
        with pytest.raises(ValidationError):
            await runner.apply([bad])
        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_provider_calls(self, runner, cloud):
        a = ResourceSpec(ResourceKind.SECURITY_GROUP, "a", {"network_id": Reference("b")})
        b = ResourceSpec(ResourceKind.SECURITY_GROUP, "b", {"network_id": Reference("a")})
        with pytest.raises(CycleError):
            await runner.apply([a, b])
        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, cloud, backend, ecs_specs):
        backend.acquire({"run_id": "other"})
        runner = Runner(cloud.provider_set(), StateStore(backend), policy=FAST_RETRY)
        with pytest.raises(LockContentionError):
            await runner.apply(ecs_specs)
        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_defect_waits_for_siblings_before_unlocking(self, store, backend):
        slow = InMemoryCloud(latency=0.05)
        runner = Runner(slow.provider_set(), store, policy=FAST_RETRY)
        original = runner.engine.apply

        async def apply_or_defect(spec, applied):
            if spec.name == "a":
                raise SchedulerDefectError("reference to an unapplied resource")
            return await original(spec, applied)

        runner.engine.apply = apply_or_defect
        with pytest.raises(SchedulerDefectError):
            await runner.apply([cluster("a"), cluster("b")])

        assert slow.find("b") is not None
        assert sorted(store.states()) == ["b"]
        assert backend.holder is None

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, runner, ecs_specs, backend):
        await runner.apply(ecs_specs)
        assert backend.holder is None

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store):
        slow = InMemoryCloud(latency=0.01)
        in_flight = 0
        peak = 0
        original = slow.create

        async def tracking_create(kind, attributes, token):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                return await original(kind, attributes, token)
            finally:
                in_flight -= 1

        slow.create = tracking_create
        runner = Runner(slow.provider_set(), store, policy=FAST_RETRY, concurrency=2)
        report = await runner.apply([cluster(f"c{i}") for i in range(6)])

        assert report.success
        assert peak == 2


class TestOrphans:
    @pytest.mark.asyncio
    async def test_orphans_rejected_without_prune(self, runner, cloud):
        await runner.apply([network(), subnet("a")])
        with pytest.raises(StateCorruptionError) as exc_info:
            await runner.apply([network()])
        assert exc_info.value.details["orphans"] == ["a"]

    @pytest.mark.asyncio
    async def test_prune_destroys_orphans(self, runner, cloud, store):
        await runner.apply([network(), subnet("a"), cluster()])
        subnet_id = store.get("a").identity

        report = await runner.apply([network()], prune=True)

        assert report.success
        assert report.pruned == ["a", "cluster"]
        assert subnet_id not in cloud.resources
        assert store.get("a") is None
        assert report.status_of("vpc") is ResourceStatus.UNCHANGED


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_in_reverse_order(self, runner, ecs_specs, cloud, store):
        apply_levels = (await runner.apply(ecs_specs)).levels

        report = await runner.destroy(ecs_specs)

        assert report.success
        assert report.levels == list(reversed(apply_levels))
        assert cloud.resources == {}
        assert store.states() == {}
        deletes = [call.name for call in cloud.calls if call.operation == "delete"]
        assert deletes.index("http_listener") < deletes.index("alb")
        assert deletes.index("web_service") < deletes.index("ecs_cluster")

    @pytest.mark.asyncio
    async def test_destroy_from_state(self, runner, ecs_specs, cloud, store):
        await runner.apply(ecs_specs)

        report = await runner.destroy()

        assert report.success
        assert cloud.resources == {}
        assert report.levels[-1] == ["ecs_cluster", "task_execution_role", "vpc"]

    @pytest.mark.asyncio
    async def test_unchanged_node_records_new_dependency(self, runner, store, backend):
        await runner.apply([network(), cluster()])
        ordered = ResourceSpec(ResourceKind.CLUSTER, "cluster", depends_on=("vpc",))

        second = await runner.apply([network(), ordered])
        assert second.status_of("cluster") is ResourceStatus.UNCHANGED
        assert store.get("cluster").dependencies == ["vpc"]
        writes = backend.writes

        third = await runner.apply([network(), ordered])
        assert third.unchanged == ["cluster", "vpc"]
        assert backend.writes == writes

        report = await runner.destroy()
        assert report.levels == [["cluster"], ["vpc"]]

    @pytest.mark.asyncio
    async def test_failed_dependent_blocks_dependency(self, runner, cloud):
        await runner.apply([network(), subnet("a")])
        cloud.fail("delete", name="a", error=TerminalProviderError)

        report = await runner.destroy([network(), subnet("a")])

        assert report.failed == ["a"]
        assert report.skipped == ["vpc"]
        assert cloud.find("vpc") is not None

    @pytest.mark.asyncio
    async def test_never_created_is_noop(self, runner):
        report = await runner.destroy([network()])
        assert report.status_of("vpc") is ResourceStatus.UNCHANGED


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, runner, ecs_specs, cloud):
        runner.cancel()
        report = await runner.apply(ecs_specs)
        assert report.cancelled
        assert report.not_started == sorted(spec.name for spec in ecs_specs)
        assert not report.success
        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_in_flight_nodes_finish(self, store, ecs_specs):
        slow = InMemoryCloud(latency=0.01)
        runner = Runner(slow.provider_set(), store, policy=FAST_RETRY, concurrency=10)
        original = slow.create

        async def create_then_cancel(kind, attributes, token):
            if attributes["tags"][NAME_TAG] == "vpc":
                runner.cancel()
            return await original(kind, attributes, token)

        slow.create = create_then_cancel
        report = await runner.apply(ecs_specs)

        assert report.cancelled
        level_zero = ["ecs_cluster", "task_execution_role", "vpc"]
        assert all(report.status_of(name) is ResourceStatus.CREATED for name in level_zero)
        assert "web_service" in report.not_started
        assert sorted(store.states()) == level_zero


class TestPreview:
    @pytest.mark.asyncio
    async def test_preview_fresh_declaration(self, runner, ecs_specs, cloud, backend):
        changes = await runner.preview(ecs_specs)

        assert {change.action for change in changes} == {Action.CREATE}
        by_name = {change.name: change for change in changes}
        assert by_name["subnet_alb"].fields["network_id"]["after"] == KNOWN_AFTER_APPLY
        assert cloud.calls == []
        assert backend.writes == 0

    @pytest.mark.asyncio
    async def test_preview_after_apply(self, runner, ecs_specs):
        await runner.apply(ecs_specs)
        changes = await runner.preview(ecs_specs)
        assert {change.action for change in changes} == {Action.NOOP}

    @pytest.mark.asyncio
    async def test_preview_replacement_marks_dependents_unknown(self, runner, store):
        await runner.apply([network(), subnet("a")])
        changes = await runner.preview([network(cidr="10.1.0.0/16"), subnet("a")])
        by_name = {change.name: change for change in changes}
        assert by_name["vpc"].action is Action.REPLACE
        assert by_name["vpc"].replace_fields == ["cidr_block"]
        assert by_name["a"].fields["network_id"]["after"] == KNOWN_AFTER_APPLY

    @pytest.mark.asyncio
    async def test_preview_destroy(self, runner):
        await runner.apply([network(), subnet("a")])
        changes = await runner.preview([network(), subnet("a"), cluster()], Intent.DESTROY)
        assert [(change.name, change.action) for change in changes] == [
            ("a", Action.DELETE),
            ("cluster", Action.NOOP),
            ("vpc", Action.DELETE),
        ]

    @pytest.mark.asyncio
    async def test_preview_prune_lists_orphans_first(self, runner):
        await runner.apply([network(), subnet("a")])
        changes = await runner.preview([network()], prune=True)
        assert [(change.name, change.action) for change in changes] == [
            ("a", Action.DELETE),
            ("vpc", Action.NOOP),
        ]


@pytest.mark.asyncio
async def test_refresh(runner, cloud, store):
    await runner.apply([network(), cluster()])
    cloud.remove(store.get("cluster").identity)

    records = await runner.refresh()

    assert [(record.name, record.status) for record in records] == [("cluster", "missing"), ("vpc", "in_sync")]
    assert store.get("cluster") is not None


def test_report_to_dict_is_json_ready():
    report = RunReport(run_id="r", intent="apply")
    report.nodes["vpc"] = NodeResult(name="vpc", kind=ResourceKind.NETWORK)
    data = report.to_dict()
    assert data["not_started"] == ["vpc"]
    assert data["nodes"]["vpc"]["status"] == "pending"
    assert data["success"] is False
