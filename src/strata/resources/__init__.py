"""Declared resource model and validation."""

from strata.resources.models import (
    Reference,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    ResourceStatus,
    iter_references,
    resolve_value,
)
from strata.resources.validation import validate, validate_all

__all__ = [
    "Reference",
    "ResourceKind",
    "ResourceSpec",
    "ResourceState",
    "ResourceStatus",
    "iter_references",
    "resolve_value",
    "validate",
    "validate_all",
]
