"""Shared test fixtures for chat-mirror."""

import asyncio
import contextlib
import pytest

from chat_mirror.client import MemoryChatClient
from chat_mirror.config import ChatConfig
from chat_mirror.engine import ReconciliationEngine
from chat_mirror.events import EventHub
from chat_mirror.models import SenderIdentity
from chat_mirror.poller import SyncPoller
from chat_mirror.session import ChatSession


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig(
        app_id="testapp",
        email="me@test.com",
        user_key="secret",
        username="Me",
        simulator_mode=True,
        poll_interval_seconds=1,
    )


@pytest.fixture
def client() -> MemoryChatClient:
    return MemoryChatClient()


@pytest.fixture
def events() -> EventHub:
    return EventHub()


@pytest.fixture
def engine(client: MemoryChatClient) -> ReconciliationEngine:
    return ReconciliationEngine(
        client, sender=SenderIdentity(username_as="Me", username_real="me@test.com")
    )


@pytest.fixture
def poller(
    client: MemoryChatClient,
    engine: ReconciliationEngine,
    events: EventHub,
    config: ChatConfig,
) -> SyncPoller:
    return SyncPoller(client, engine, events, config)


@pytest.fixture
def session(config: ChatConfig, client: MemoryChatClient) -> ChatSession:
    return ChatSession(config, client=client)


@pytest.fixture(autouse=True)
async def _cancel_stray_tasks():
    """Cancel any tasks that leaked from a test."""
    yield
    await asyncio.sleep(0)
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(asyncio.shield(task), timeout=0.1)
