"""Provider interface and built-in provider backends."""

# Import built-in providers for side effects (registration)
from strata.providers import http as _http  # noqa: F401
from strata.providers import memory as _memory  # noqa: F401
from strata.providers.base import (
    CreateResult,
    ProviderSet,
    ResourceProvider,
    idempotency_token,
)
from strata.providers.registry import (
    create_provider,
    list_providers,
    register_provider,
)

__all__ = [
    "CreateResult",
    "ProviderSet",
    "ResourceProvider",
    "create_provider",
    "idempotency_token",
    "list_providers",
    "register_provider",
]
