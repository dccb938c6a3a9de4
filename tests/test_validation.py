"""Tests for resources/validation.py."""

import pytest

from strata.core.errors import ValidationError
from strata.resources.models import Reference, ResourceKind, ResourceSpec
from strata.resources.validation import validate, validate_all


def listener(**overrides):
    attributes = {
        "load_balancer_arn": Reference("alb", "arn"),
        "port": 80,
        "protocol": "HTTP",
        "default_action": {"type": "forward", "target_group_arn": Reference("tg", "arn")},
    }
    attributes.update(overrides)
    return ResourceSpec(ResourceKind.LISTENER, "listener", attributes)


def test_example_declaration_is_valid(ecs_specs):
    validate_all(ecs_specs)


def test_references_accepted_where_literals_expected():
    validate(listener())


@pytest.mark.parametrize("value", [0, 65536, "80", 80.0, True])
def test_listener_port_out_of_range(value):
    with pytest.raises(ValidationError) as exc_info:
        validate(listener(port=value))
    assert exc_info.value.field == "port"
    assert exc_info.value.kind == "listener"


def test_protocol_must_be_enumerated():
    with pytest.raises(ValidationError) as exc_info:
        validate(listener(protocol="FTP"))
    assert exc_info.value.field == "protocol"


def test_forward_action_requires_target_group():
    with pytest.raises(ValidationError) as exc_info:
        validate(listener(default_action={"type": "forward"}))
    assert exc_info.value.field == "default_action.target_group_arn"


def test_missing_required_attribute():
    spec = ResourceSpec(ResourceKind.SUBNET, "a", {"network_id": Reference("vpc"), "cidr_block": "10.0.1.0/24"})
    with pytest.raises(ValidationError) as exc_info:
        validate(spec)
    assert exc_info.value.field == "availability_zone"
    assert exc_info.value.reason == "required attribute is missing"


@pytest.mark.parametrize("block", ["10.0.0.0/33", "10.0.0.1/16", "not-a-cidr", 10])
def test_invalid_cidr(block):
    spec = ResourceSpec(ResourceKind.NETWORK, "vpc", {"cidr_block": block})
    with pytest.raises(ValidationError) as exc_info:
        validate(spec)
    assert exc_info.value.field == "cidr_block"


def test_security_group_rule_port_order():
    spec = ResourceSpec(
        ResourceKind.SECURITY_GROUP,
        "sg",
        {
            "network_id": Reference("vpc"),
            "ingress": [{"protocol": "tcp", "from_port": 443, "to_port": 80}],
        },
    )
    with pytest.raises(ValidationError) as exc_info:
        validate(spec)
    assert exc_info.value.field == "ingress[0].from_port"


def test_container_definitions_need_image():
    spec = ResourceSpec(
        ResourceKind.TASK_DEFINITION,
        "task",
        {"family": "web", "cpu": 256, "memory": 512, "container_definitions": [{"name": "web"}]},
    )
    with pytest.raises(ValidationError) as exc_info:
        validate(spec)
    assert exc_info.value.field == "container_definitions[0].image"


def test_load_balancer_needs_a_subnet():
    spec = ResourceSpec(
        ResourceKind.LOAD_BALANCER,
        "alb",
        {"subnets": [], "security_groups": [Reference("sg")]},
    )
    with pytest.raises(ValidationError) as exc_info:
        validate(spec)
    assert exc_info.value.field == "subnets"


def test_name_cannot_contain_dot():
    with pytest.raises(ValidationError) as exc_info:
        validate(ResourceSpec(ResourceKind.CLUSTER, "a.b", {}))
    assert exc_info.value.field == "name"


def test_tags_must_be_strings():
    spec = ResourceSpec(ResourceKind.CLUSTER, "c", {}, tags={"cost-center": 42})  # type: ignore[dict-item]
    with pytest.raises(ValidationError):
        validate(spec)


def test_error_message_names_resource_and_field():
    with pytest.raises(ValidationError) as exc_info:
        validate(listener(port=0))
    assert "listener (listener)" in str(exc_info.value)
    assert "'port'" in str(exc_info.value)
