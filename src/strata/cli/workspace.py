"""
Wiring shared by the CLI commands: settings, providers and state store.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import structlog
from pydantic import ValidationError as PydanticValidationError

from strata.config.settings import Settings, get_settings
from strata.core.errors import ConfigurationError
from strata.engine.runner import Runner
from strata.providers.base import ProviderSet
from strata.providers.memory import InMemoryCloud
from strata.providers.registry import create_provider
from strata.state.backends import FileStateBackend
from strata.state.store import StateStore

logger = structlog.get_logger()


def resolve_settings(**overrides: Any) -> Settings:
    """Cached settings with command-line overrides applied."""
    settings = get_settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return settings
    try:
        return Settings.model_validate({**settings.model_dump(), **updates})
    except PydanticValidationError as exc:
        fields = sorted(str(error["loc"][0]) for error in exc.errors() if error["loc"])
        raise ConfigurationError(f"Invalid setting: {', '.join(fields)}", {"fields": fields}) from exc


@dataclass
class Workspace:
    settings: Settings
    providers: ProviderSet
    store: StateStore
    cloud: InMemoryCloud | None = None

    def runner(self) -> Runner:
        return Runner.from_settings(self.providers, self.store, self.settings)


@asynccontextmanager
async def open_workspace(settings: Settings) -> AsyncIterator[Workspace]:
    """
    Build providers and the file-backed state store.

    The memory provider keeps its simulated cloud in ``simulator_path`` so
    successive commands see the same resources.
    """
    cloud: InMemoryCloud | None = None
    kwargs: dict[str, Any] = {
        "url": settings.provider_url,
        "token": settings.provider_token,
        "timeout": settings.call_timeout,
    }
    if settings.provider == "memory":
        cloud = InMemoryCloud.load(settings.simulator_path)
        kwargs["cloud"] = cloud

    providers = create_provider(settings.provider, **kwargs)
    store = StateStore(FileStateBackend(settings.state_path))
    try:
        yield Workspace(settings=settings, providers=providers, store=store, cloud=cloud)
    finally:
        await providers.aclose()
        if cloud is not None:
            cloud.save(settings.simulator_path)
            logger.debug("simulator_saved", path=str(settings.simulator_path), resources=len(cloud.resources))
