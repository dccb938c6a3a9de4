"""Root test configuration."""

import logging
from pathlib import Path

import pytest
import structlog

from factories import FAST_RETRY
from strata.declarations import load_declaration
from strata.engine import Runner
from strata.providers.memory import InMemoryCloud
from strata.state.backends import MemoryStateBackend
from strata.state.store import StateStore

EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def ecs_specs():
    """The ECS/ALB example declaration."""
    return load_declaration(EXAMPLES_DIR / "ecs_fargate.yaml")


@pytest.fixture
def cloud():
    return InMemoryCloud()


@pytest.fixture
def backend():
    return MemoryStateBackend()


@pytest.fixture
def store(backend):
    return StateStore(backend)


@pytest.fixture
def runner(cloud, store):
    return Runner(cloud.provider_set(), store, policy=FAST_RETRY, concurrency=4)

