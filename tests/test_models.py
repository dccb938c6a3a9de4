"""Tests for resources/models.py."""

import pytest

from strata.resources.models import (
    Reference,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    ResourceStatus,
    check_transition,
    iter_references,
    resolve_value,
)


class TestReference:
    def test_parse(self):
        ref = Reference.parse("alb.arn")
        assert ref == Reference("alb", "arn")
        assert str(ref) == "alb.arn"

    def test_default_attribute_is_id(self):
        assert Reference("vpc").attribute == "id"

    @pytest.mark.parametrize("expr", ["vpc", ".id", "vpc.", ""])
    def test_parse_rejects_malformed(self, expr):
        with pytest.raises(ValueError):
            Reference.parse(expr)


def test_iter_references_finds_nested_values():
    value = {
        "subnets": [Reference("a"), Reference("b")],
        "load_balancer": {"target_group_arn": Reference("tg", "arn")},
        "port": 80,
    }
    assert sorted(str(ref) for ref in iter_references(value)) == ["a.id", "b.id", "tg.arn"]


def test_resolve_value_replaces_references():
    value = {"ids": (Reference("a"),), "nested": {"arn": Reference("b", "arn")}, "n": 1}
    resolved = resolve_value(value, lambda ref: f"{ref.target}-{ref.attribute}")
    assert resolved == {"ids": ["a-id"], "nested": {"arn": "b-arn"}, "n": 1}


class TestResourceSpec:
    def test_kind_coerced_from_string(self):
        spec = ResourceSpec("subnet", "a", {})
        assert spec.kind is ResourceKind.SUBNET
        assert spec.address == "subnet.a"

    def test_attributes_are_read_only(self):
        spec = ResourceSpec(ResourceKind.NETWORK, "vpc", {"cidr_block": "10.0.0.0/16"})
        with pytest.raises(TypeError):
            spec.attributes["cidr_block"] = "10.1.0.0/16"  # type: ignore[index]

    def test_declared_dict_is_copied(self):
        attributes = {"cidr_block": "10.0.0.0/16"}
        spec = ResourceSpec(ResourceKind.NETWORK, "vpc", attributes)
        attributes["cidr_block"] = "10.9.0.0/16"
        assert spec.attributes["cidr_block"] == "10.0.0.0/16"

    def test_dependencies_include_depends_on(self):
        spec = ResourceSpec(
            ResourceKind.SERVICE,
            "svc",
            {"cluster": Reference("cluster", "arn"), "task_definition": Reference("task", "arn")},
            depends_on=("listener",),
        )
        assert spec.dependencies() == ["cluster", "listener", "task"]


class TestResourceState:
    def test_produced_id_falls_back_to_identity(self):
        state = ResourceState(name="vpc", kind=ResourceKind.NETWORK, identity="vpc-1")
        assert state.produced("id") == "vpc-1"

    def test_produced_prefers_outputs_then_attributes(self):
        state = ResourceState(
            name="alb",
            kind=ResourceKind.LOAD_BALANCER,
            identity="lb-1",
            attributes={"type": "application"},
            outputs={"arn": "arn:lb-1"},
        )
        assert state.produced("arn") == "arn:lb-1"
        assert state.produced("type") == "application"
        with pytest.raises(KeyError):
            state.produced("dns_name")


class TestStatusTransitions:
    @pytest.mark.parametrize(
        "current,new",
        [
            (ResourceStatus.PENDING, ResourceStatus.IN_PROGRESS),
            (ResourceStatus.PENDING, ResourceStatus.SKIPPED),
            (ResourceStatus.IN_PROGRESS, ResourceStatus.CREATED),
            (ResourceStatus.IN_PROGRESS, ResourceStatus.UNCHANGED),
            (ResourceStatus.IN_PROGRESS, ResourceStatus.FAILED),
        ],
    )
    def test_allowed(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            (ResourceStatus.PENDING, ResourceStatus.CREATED),
            (ResourceStatus.CREATED, ResourceStatus.FAILED),
            (ResourceStatus.FAILED, ResourceStatus.IN_PROGRESS),
            (ResourceStatus.SKIPPED, ResourceStatus.IN_PROGRESS),
        ],
    )
    def test_rejected(self, current, new):
        with pytest.raises(ValueError):
            check_transition(current, new)

    def test_terminal_and_success(self):
        assert ResourceStatus.FAILED.is_terminal and not ResourceStatus.FAILED.is_success
        assert ResourceStatus.UNCHANGED.is_success
        assert not ResourceStatus.IN_PROGRESS.is_terminal
