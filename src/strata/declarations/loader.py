"""
Declaration file loading.

A declaration is a YAML document::

    tags:
      env: prod
    resources:
      - kind: network
        name: vpc
        attributes:
          cidr_block: 10.0.0.0/16
      - kind: subnet
        name: public_a
        attributes:
          network_id: {ref: vpc.id}
          cidr_block: 10.0.1.0/24
          availability_zone: us-east-1a

A mapping with the single key ``ref`` anywhere inside ``attributes`` is a
:class:`Reference`. Top-level ``tags`` are merged into every resource;
tags set on a resource win.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from strata.core.errors import ConfigurationError, ValidationError
from strata.resources.models import Reference, ResourceKind, ResourceSpec

logger = structlog.get_logger()

REFERENCE_KEY = "ref"
RESOURCE_KEYS = frozenset({"kind", "name", "attributes", "tags", "depends_on"})


def _convert(value: Any, resource: str, kind: str) -> Any:
    if isinstance(value, dict):
        if set(value) == {REFERENCE_KEY}:
            expr = value[REFERENCE_KEY]
            try:
                return Reference.parse(str(expr))
            except ValueError as exc:
                raise ValidationError(kind, REFERENCE_KEY, str(exc), resource=resource) from exc
        return {key: _convert(item, resource, kind) for key, item in value.items()}
    if isinstance(value, list):
        return [_convert(item, resource, kind) for item in value]
    return value


def parse_resource(raw: Any, defaults: dict[str, str] | None = None) -> ResourceSpec:
    """Build a :class:`ResourceSpec` from one entry of ``resources``."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Each resource must be a mapping", {"entry": repr(raw)})

    name = raw.get("name")
    kind_value = raw.get("kind")
    if not isinstance(name, str) or not name:
        raise ConfigurationError("Resource is missing a 'name'", {"entry": repr(raw)})
    if not isinstance(kind_value, str):
        raise ValidationError("unknown", "kind", "missing", resource=name)
    try:
        kind = ResourceKind(kind_value)
    except ValueError:
        supported = ", ".join(k.value for k in ResourceKind)
        raise ValidationError(kind_value, "kind", f"unsupported kind (expected one of {supported})", resource=name) from None

    unknown_keys = sorted(set(raw) - RESOURCE_KEYS)
    if unknown_keys:
        raise ConfigurationError(
            f"Resource '{name}' has unknown keys: {', '.join(unknown_keys)}",
            {"resource": name},
        )

    attributes = raw.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise ValidationError(kind.value, "attributes", "must be a mapping", resource=name)

    tags = dict(defaults or {})
    resource_tags = raw.get("tags") or {}
    if not isinstance(resource_tags, dict):
        raise ValidationError(kind.value, "tags", "must be a mapping", resource=name)
    tags.update(resource_tags)

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
        raise ValidationError(kind.value, "depends_on", "must be a list of resource names", resource=name)

    return ResourceSpec(
        kind=kind,
        name=name,
        attributes=_convert(attributes, name, kind.value),
        tags=tags,
        depends_on=tuple(depends_on),
    )


def parse_declaration(data: Any) -> list[ResourceSpec]:
    """Build resource specs from an already parsed YAML document."""
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ConfigurationError("Declaration must be a mapping with a 'resources' list")
    resources = data.get("resources") or []
    if not isinstance(resources, list):
        raise ConfigurationError("'resources' must be a list")
    defaults = data.get("tags") or {}
    if not isinstance(defaults, dict):
        raise ConfigurationError("Top-level 'tags' must be a mapping")
    return [parse_resource(raw, {str(k): str(v) for k, v in defaults.items()}) for raw in resources]


def load_declaration(path: str | Path) -> list[ResourceSpec]:
    """Read and parse a declaration file.

    Raises:
        ConfigurationError: the file is missing or is not valid YAML
        ValidationError: a resource names an unsupported kind
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Declaration file not found: {path}", {"path": str(path)}) from None
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}", {"path": str(path)}) from exc

    specs = parse_declaration(data)
    logger.debug("declaration_loaded", path=str(path), resources=len(specs))
    return specs
