"""Shared pytest fixtures for testing."""

import asyncio
import inspect
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from livechat_core.config import RoutingSettings
from livechat_core.routing import (
    Agent,
    AgentState,
    InMemoryPersistenceStore,
    Notifier,
    RoutingService,
    VisitorProfile,
)


TENANT_ID = "site-1"


# =============================================================================
# Notifier
# =============================================================================


class RecordingNotifier(Notifier):
    """Notifier that keeps every published event for assertions."""

    def __init__(self):
        self.published: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        self.published.append((channel, event, payload))

    def events(self, event: str, channel: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            payload for ch, ev, payload in self.published
            if ev == event and (channel is None or ch == channel)
        ]

    def clear(self) -> None:
        self.published.clear()


class YieldingStore(InMemoryPersistenceStore):
    """In-memory store that yields to the event loop before every call."""

    def __getattribute__(self, name):
        attr = super().__getattribute__(name)
        if name.startswith("_") or not inspect.iscoroutinefunction(attr):
            return attr

        async def wrapper(*args, **kwargs):
            await asyncio.sleep(0)
            return await attr(*args, **kwargs)

        return wrapper


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def settings() -> RoutingSettings:
    """Settings isolated from the environment and any .env file."""
    return RoutingSettings(_env_file=None, default_strategy="least_busy")


@pytest.fixture
def store() -> InMemoryPersistenceStore:
    return InMemoryPersistenceStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def service(store, notifier, settings):
    """Routing service wired to the in-memory store and recording notifier."""
    service = RoutingService(store=store, notifier=notifier, settings=settings)
    yield service
    await service.stop()


@pytest.fixture
def add_agent(service):
    """Register an agent that is online and available unless told otherwise."""

    async def _add_agent(
        agent_id: str,
        tenant_id: Optional[str] = TENANT_ID,
        **kwargs,
    ) -> Agent:
        kwargs.setdefault("is_online", True)
        kwargs.setdefault("state", AgentState.AVAILABLE)
        kwargs.setdefault("name", agent_id.replace("-", " ").title())
        return await service.agents.register_agent(
            Agent(id=agent_id, tenant_id=tenant_id, **kwargs)
        )

    return _add_agent


@pytest.fixture
def visitor():
    """Build a visitor profile."""

    def _visitor(visitor_id: str = "visitor-1", **kwargs) -> VisitorProfile:
        return VisitorProfile(visitor_id=visitor_id, **kwargs)

    return _visitor


@pytest_asyncio.fixture
async def yielding_service(notifier, settings):
    """Routing service whose store yields before every call, forcing interleavings."""
    service = RoutingService(store=YieldingStore(), notifier=notifier, settings=settings)
    yield service
    await service.stop()
