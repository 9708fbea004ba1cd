"""Shared pytest fixtures for polyexec tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest

from polyexec import Engine, LanguageRegistry
from tests.fakes import FakeDockerClient, unit_config

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry()


@pytest.fixture
async def make_engine(fake_docker: FakeDockerClient) -> AsyncGenerator[Any, None]:
    """Factory for started engines backed by the fake daemon.

    Example:
        async def test_something(make_engine, fake_docker):
            engine = await make_engine(max_concurrent_sessions=2)
    """
    engines: list[Engine] = []

    async def _make(**config_overrides: Any) -> Engine:
        engine = Engine(unit_config(**config_overrides), client_factory=fake_docker.factory)
        await engine.start()
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.close()


@pytest.fixture
async def engine(make_engine: Any) -> Engine:
    return await make_engine()
