"""
Literal validation for declared resources.

Validation is side-effect free and all-or-nothing: the first problem found
raises :class:`~strata.core.errors.ValidationError`. A :class:`Reference`
is accepted wherever a literal is expected; its value is checked by the
provider once it resolves.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from strata.core.errors import ValidationError
from strata.resources.models import Reference, ResourceKind, ResourceSpec

LISTENER_PROTOCOLS = frozenset({"HTTP", "HTTPS", "TCP", "UDP", "TLS", "TCP_UDP"})
RULE_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "-1"})
LOAD_BALANCER_TYPES = frozenset({"application", "network"})
TARGET_TYPES = frozenset({"ip", "instance", "lambda"})
LAUNCH_TYPES = frozenset({"FARGATE", "EC2"})

Check = Callable[[Any], str | None]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def port(value: Any) -> str | None:
    if not _is_int(value) or not 1 <= value <= 65535:
        return f"port must be an integer in 1-65535, got {value!r}"
    return None


def rule_port(value: Any) -> str | None:
    if not _is_int(value) or not 0 <= value <= 65535:
        return f"port must be an integer in 0-65535, got {value!r}"
    return None


def cidr(value: Any) -> str | None:
    if not isinstance(value, str):
        return f"CIDR block must be a string, got {value!r}"
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as exc:
        return f"invalid CIDR block {value!r}: {exc}"
    return None


def non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return f"expected a non-empty string, got {value!r}"
    return None


def positive_int(value: Any) -> str | None:
    if not _is_int(value) or value <= 0:
        return f"expected a positive integer, got {value!r}"
    return None


def non_negative_int(value: Any) -> str | None:
    if not _is_int(value) or value < 0:
        return f"expected a non-negative integer, got {value!r}"
    return None


def boolean(value: Any) -> str | None:
    if not isinstance(value, bool):
        return f"expected a boolean, got {value!r}"
    return None


def one_of(choices: Iterable[str]) -> Check:
    allowed = frozenset(choices)

    def check(value: Any) -> str | None:
        if value not in allowed:
            return f"must be one of {sorted(allowed)}, got {value!r}"
        return None

    return check


def list_of(item: Check, *, min_items: int = 0) -> Check:
    def check(value: Any) -> str | None:
        if not isinstance(value, (list, tuple)):
            return f"expected a list, got {type(value).__name__}"
        if len(value) < min_items:
            return f"expected at least {min_items} item(s), got {len(value)}"
        for index, element in enumerate(value):
            if isinstance(element, Reference):
                continue
            problem = item(element)
            if problem:
                return f"item {index}: {problem}"
        return None

    return check


def mapping(value: Any) -> str | None:
    if not isinstance(value, Mapping):
        return f"expected a mapping, got {type(value).__name__}"
    return None


@dataclass(frozen=True)
class KindSchema:
    """Required and optional attribute checks for one resource kind."""

    required: Mapping[str, Check] = field(default_factory=dict)
    optional: Mapping[str, Check] = field(default_factory=dict)
    nested: Callable[[ResourceSpec], None] | None = None


def _rule_checks(spec: ResourceSpec, attribute: str) -> None:
    rules = spec.attributes.get(attribute, [])
    if isinstance(rules, Reference):
        return
    problem = list_of(mapping)(rules)
    if problem:
        _fail(spec, attribute, problem)
    for index, rule in enumerate(rules):
        if isinstance(rule, Reference):
            continue
        prefix = f"{attribute}[{index}]"
        _check_fields(
            spec,
            rule,
            required={"protocol": one_of(RULE_PROTOCOLS), "from_port": rule_port, "to_port": rule_port},
            optional={"cidr_blocks": list_of(cidr), "security_groups": list_of(non_empty_string)},
            prefix=prefix,
        )
        low, high = rule.get("from_port"), rule.get("to_port")
        if _is_int(low) and _is_int(high) and low > high:
            _fail(spec, f"{prefix}.from_port", f"from_port {low} is greater than to_port {high}")


def _security_group_rules(spec: ResourceSpec) -> None:
    _rule_checks(spec, "ingress")
    _rule_checks(spec, "egress")


def _route_entries(spec: ResourceSpec) -> None:
    routes = spec.attributes.get("routes", [])
    if isinstance(routes, Reference):
        return
    problem = list_of(mapping)(routes)
    if problem:
        _fail(spec, "routes", problem)
    for index, route in enumerate(routes):
        if isinstance(route, Reference):
            continue
        _check_fields(
            spec,
            route,
            required={"cidr_block": cidr, "gateway_id": non_empty_string},
            prefix=f"routes[{index}]",
        )


def _listener_action(spec: ResourceSpec) -> None:
    action = spec.attributes.get("default_action")
    if isinstance(action, Reference):
        return
    _check_fields(
        spec,
        action,
        required={"type": one_of({"forward", "redirect", "fixed-response"})},
        optional={"target_group_arn": non_empty_string},
        prefix="default_action",
    )
    if action.get("type") == "forward" and "target_group_arn" not in action:
        _fail(spec, "default_action.target_group_arn", "required for forward actions")


def _container_definitions(spec: ResourceSpec) -> None:
    containers = spec.attributes.get("container_definitions")
    if isinstance(containers, Reference):
        return
    for index, container in enumerate(containers):
        if isinstance(container, Reference):
            continue
        _check_fields(
            spec,
            container,
            required={"name": non_empty_string, "image": non_empty_string},
            optional={"container_port": port, "essential": boolean, "environment": mapping},
            prefix=f"container_definitions[{index}]",
        )


def _service_load_balancer(spec: ResourceSpec) -> None:
    binding = spec.attributes.get("load_balancer")
    if binding is None or isinstance(binding, Reference):
        return
    _check_fields(
        spec,
        binding,
        required={
            "target_group_arn": non_empty_string,
            "container_name": non_empty_string,
            "container_port": port,
        },
        prefix="load_balancer",
    )


SCHEMAS: dict[ResourceKind, KindSchema] = {
    ResourceKind.NETWORK: KindSchema(
        required={"cidr_block": cidr},
        optional={"enable_dns_hostnames": boolean, "enable_dns_support": boolean},
    ),
    ResourceKind.SUBNET: KindSchema(
        required={"network_id": non_empty_string, "cidr_block": cidr, "availability_zone": non_empty_string},
        optional={"map_public_ip_on_launch": boolean},
    ),
    ResourceKind.GATEWAY: KindSchema(required={"network_id": non_empty_string}),
    ResourceKind.ROUTE_TABLE: KindSchema(
        required={"network_id": non_empty_string},
        optional={"routes": list_of(mapping)},
        nested=_route_entries,
    ),
    ResourceKind.ASSOCIATION: KindSchema(
        required={"subnet_id": non_empty_string, "route_table_id": non_empty_string},
    ),
    ResourceKind.LOAD_BALANCER: KindSchema(
        required={
            "subnets": list_of(non_empty_string, min_items=1),
            "security_groups": list_of(non_empty_string, min_items=1),
        },
        optional={"internal": boolean, "type": one_of(LOAD_BALANCER_TYPES)},
    ),
    ResourceKind.TARGET_GROUP: KindSchema(
        required={"network_id": non_empty_string, "port": port, "protocol": one_of(LISTENER_PROTOCOLS)},
        optional={"target_type": one_of(TARGET_TYPES), "health_check": mapping},
    ),
    ResourceKind.LISTENER: KindSchema(
        required={
            "load_balancer_arn": non_empty_string,
            "port": port,
            "protocol": one_of(LISTENER_PROTOCOLS),
            "default_action": mapping,
        },
        nested=_listener_action,
    ),
    ResourceKind.CLUSTER: KindSchema(optional={"container_insights": boolean}),
    ResourceKind.TASK_DEFINITION: KindSchema(
        required={
            "family": non_empty_string,
            "cpu": positive_int,
            "memory": positive_int,
            "container_definitions": list_of(mapping, min_items=1),
        },
        optional={
            "execution_role_arn": non_empty_string,
            "task_role_arn": non_empty_string,
            "network_mode": one_of({"awsvpc", "bridge", "host", "none"}),
            "requires_compatibilities": list_of(one_of(LAUNCH_TYPES)),
        },
        nested=_container_definitions,
    ),
    ResourceKind.SERVICE: KindSchema(
        required={
            "cluster": non_empty_string,
            "task_definition": non_empty_string,
            "desired_count": non_negative_int,
        },
        optional={
            "launch_type": one_of(LAUNCH_TYPES),
            "subnets": list_of(non_empty_string),
            "security_groups": list_of(non_empty_string),
            "assign_public_ip": boolean,
            "load_balancer": mapping,
        },
        nested=_service_load_balancer,
    ),
    ResourceKind.SECURITY_GROUP: KindSchema(
        required={"network_id": non_empty_string},
        optional={"description": non_empty_string, "ingress": list_of(mapping), "egress": list_of(mapping)},
        nested=_security_group_rules,
    ),
    ResourceKind.ROLE: KindSchema(
        required={"assume_role_policy": mapping},
        optional={"description": non_empty_string},
    ),
    ResourceKind.POLICY_ATTACHMENT: KindSchema(
        required={"role": non_empty_string, "policy_arn": non_empty_string},
    ),
}


def _fail(spec: ResourceSpec, field_name: str, reason: str) -> None:
    raise ValidationError(spec.kind.value, field_name, reason, resource=spec.name)


def _check_fields(
    spec: ResourceSpec,
    values: Any,
    *,
    required: Mapping[str, Check],
    optional: Mapping[str, Check] | None = None,
    prefix: str = "",
) -> None:
    dotted = (lambda key: f"{prefix}.{key}") if prefix else (lambda key: key)
    if not isinstance(values, Mapping):
        _fail(spec, prefix or "attributes", f"expected a mapping, got {type(values).__name__}")
    for key, check in required.items():
        if key not in values or values[key] is None:
            _fail(spec, dotted(key), "required attribute is missing")
        _run_check(spec, dotted(key), check, values[key])
    for key, check in (optional or {}).items():
        if key in values and values[key] is not None:
            _run_check(spec, dotted(key), check, values[key])


def _run_check(spec: ResourceSpec, field_name: str, check: Check, value: Any) -> None:
    if isinstance(value, Reference):
        return
    problem = check(value)
    if problem:
        _fail(spec, field_name, problem)


def validate(spec: ResourceSpec) -> None:
    """Validate one resource's declared attributes and tags."""
    if not spec.name or not spec.name.strip():
        raise ValidationError(spec.kind.value, "name", "logical name must be a non-empty string")
    if "." in spec.name:
        _fail(spec, "name", "logical name must not contain '.'")
    schema = SCHEMAS[spec.kind]
    _check_fields(spec, spec.attributes, required=schema.required, optional=schema.optional)
    if schema.nested is not None:
        schema.nested(spec)
    for key, value in spec.tags.items():
        if not isinstance(key, str) or not isinstance(value, str):
            _fail(spec, f"tags.{key}", "tag keys and values must be strings")


def validate_all(specs: Iterable[ResourceSpec]) -> None:
    """Validate every resource, stopping at the first invalid one."""
    for spec in sorted(specs, key=lambda s: s.name):
        validate(spec)
