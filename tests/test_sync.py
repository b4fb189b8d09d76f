"""Tests for the sync poller and the event hub."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from chat_mirror.client import MemoryChatClient
from chat_mirror.conventions import EVENT_NEW_MESSAGES
from chat_mirror.engine import ReconciliationEngine
from chat_mirror.events import EventHub
from chat_mirror.models import DeliveryState, Room
from chat_mirror.poller import SyncPoller, group_by_room
from chat_mirror.schema import CommentPayload, RoomPayload, TopicPayload


def _make_comment(
    comment_id: int,
    room_id: int | str | None = "R1",
    message: str = "hi",
    unique_id: str = "",
) -> CommentPayload:
    return CommentPayload(
        id=comment_id,
        room_id=room_id,
        topic_id=7,
        message=message,
        unique_id=unique_id,
        email="friend@test.com",
    )


# =====================================================================
#  1. EVENTS
# =====================================================================


class TestEventHub:
    @pytest.mark.asyncio()
    async def test_emit_to_observers_in_order(self, events: EventHub) -> None:
        seen: list[str] = []
        events.subscribe("e", lambda p: seen.append(f"a:{p}"))
        events.subscribe("e", lambda p: seen.append(f"b:{p}"))
        delivered = await events.emit("e", 1)
        assert delivered == 2
        assert seen == ["a:1", "b:1"]

    @pytest.mark.asyncio()
    async def test_async_observer_awaited(self, events: EventHub) -> None:
        seen: list[Any] = []

        async def observer(payload: Any) -> None:
            await asyncio.sleep(0)
            seen.append(payload)

        events.subscribe("e", observer)
        await events.emit("e", "x")
        assert seen == ["x"]

    @pytest.mark.asyncio()
    async def test_failing_observer_does_not_block_others(
        self, events: EventHub
    ) -> None:
        seen: list[Any] = []

        def broken(payload: Any) -> None:
            raise RuntimeError("boom")

        events.subscribe("e", broken)
        events.subscribe("e", seen.append)
        delivered = await events.emit("e", 5)
        assert delivered == 1
        assert seen == [5]

    @pytest.mark.asyncio()
    async def test_unsubscribe(self, events: EventHub) -> None:
        seen: list[Any] = []
        cancel = events.subscribe("e", seen.append)
        cancel()
        assert await events.emit("e", 1) == 0
        assert seen == []
        assert events.unsubscribe("e", seen.append) is False

    @pytest.mark.asyncio()
    async def test_unknown_event(self, events: EventHub) -> None:
        assert await events.emit("nothing", None) == 0


# =====================================================================
#  2. POLLER
# =====================================================================


class TestGroupByRoom:
    def test_first_seen_order(self) -> None:
        batch = [_make_comment(1, "b"), _make_comment(2, "a"), _make_comment(3, "b")]
        groups = group_by_room(batch)
        assert list(groups) == ["b", "a"]
        assert [c.id for c in groups["b"]] == [1, 3]


class TestSyncPoller:
    def test_not_running_initially(self, poller: SyncPoller) -> None:
        assert poller.is_running is False

    @pytest.mark.asyncio()
    async def test_start(self, poller: SyncPoller) -> None:
        try:
            poller.start()
            assert poller.is_running is True
        finally:
            poller.stop()

    @pytest.mark.asyncio()
    async def test_stop(self, poller: SyncPoller) -> None:
        poller.start()
        poller.stop()
        assert poller.is_running is False

    @pytest.mark.asyncio()
    async def test_start_idempotent(self, poller: SyncPoller) -> None:
        try:
            poller.start()
            task = poller._task
            poller.start()  # Should not create a second task
            assert poller._task is task
        finally:
            poller.stop()

    @pytest.mark.asyncio()
    async def test_poll_once_empty(
        self, poller: SyncPoller, events: EventHub
    ) -> None:
        fired: list[Any] = []
        events.subscribe(EVENT_NEW_MESSAGES, fired.append)
        assert await poller.poll_once() == []
        assert fired == []

    @pytest.mark.asyncio()
    async def test_unknown_room_is_synthesized(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
        events: EventHub,
    ) -> None:
        fired: list[list[CommentPayload]] = []
        events.subscribe(EVENT_NEW_MESSAGES, fired.append)
        client.inject_comment(_make_comment(42, "R1", "hi"))

        batch = await poller.poll_once()

        room = engine.get_room("R1")
        assert room is not None
        assert room.name == "friend@test.com"
        assert [c.id for c in room.comments] == [42]
        assert len(fired) == 1
        assert fired[0] == batch
        assert [c.id for c in fired[0]] == [42]

    @pytest.mark.asyncio()
    async def test_routes_to_existing_room(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
    ) -> None:
        existing = engine.add_room(Room(id="R1", name="kept"))
        client.inject_comment(_make_comment(1, "R1"))
        client.inject_comment(_make_comment(2, "R2"))
        await poller.poll_once()
        assert engine.get_room("R1") is existing
        assert existing.name == "kept"
        assert [c.id for c in existing.comments] == [1]
        assert [c.id for c in engine.get_room("R2").comments] == [2]
        assert len(engine.rooms) == 2

    @pytest.mark.asyncio()
    async def test_redelivery_is_idempotent(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
        events: EventHub,
    ) -> None:
        fired: list[Any] = []
        events.subscribe(EVENT_NEW_MESSAGES, fired.append)
        client.inject_comment(_make_comment(1))
        await poller.poll_once()
        client.inject_comment(_make_comment(1))
        await poller.poll_once()
        assert [c.id for c in engine.get_room("R1").comments] == [1]
        assert len(fired) == 2

    @pytest.mark.asyncio()
    async def test_sync_supersedes_pending_echo(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
    ) -> None:
        client.seed_room(RoomPayload(id="R1"), [TopicPayload(id=7)])
        room = engine.add_room(Room(id="R1"))
        engine.selection.room = room
        client.post_gate = asyncio.Event()
        client.echo_posts = False

        task = asyncio.ensure_future(engine.submit(7, "hello", "u1"))
        await asyncio.sleep(0)
        client.inject_comment(_make_comment(900, "R1", "hello", unique_id="u1"))
        await poller.poll_once()

        assert [c.id for c in room.comments] == [900]
        client.post_gate.set()
        await task
        assert [c.id for c in room.comments] == [900]
        assert room.comments[0].delivery_state is DeliveryState.SENT

    @pytest.mark.asyncio()
    async def test_submit_then_echoed_sync(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
    ) -> None:
        client.seed_room(RoomPayload(id="R1"), [TopicPayload(id=7)])
        room = engine.add_room(Room(id="R1"))
        engine.selection.room = room
        response = await engine.submit(7, "hello", "u1")
        await poller.poll_once()
        assert [c.id for c in room.comments] == [response.id]

    @pytest.mark.asyncio()
    async def test_roomless_comments_go_to_selection(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
    ) -> None:
        room = engine.add_room(Room(id=1))
        engine.selection.room = room
        client.inject_comment(_make_comment(3, room_id=None))
        await poller.poll_once()
        assert [c.id for c in room.comments] == [3]

    @pytest.mark.asyncio()
    async def test_roomless_comments_dropped_without_selection(
        self,
        poller: SyncPoller,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
    ) -> None:
        client.inject_comment(_make_comment(3, room_id=None))
        batch = await poller.poll_once()
        assert len(batch) == 1
        assert engine.rooms == []

    @pytest.mark.asyncio()
    async def test_fetch_error_propagates(
        self, poller: SyncPoller, client: MemoryChatClient
    ) -> None:
        async def broken() -> list[CommentPayload]:
            raise ConnectionError("offline")

        client.fetch_new_comments = broken  # type: ignore[method-assign]
        with pytest.raises(ConnectionError):
            await poller.poll_once()
        # The in-flight guard is released after a failure
        del client.fetch_new_comments
        assert await poller.poll_once() == []

    @pytest.mark.asyncio()
    async def test_overlapping_poll_rejected(
        self, poller: SyncPoller, client: MemoryChatClient
    ) -> None:
        gate = asyncio.Event()

        async def slow() -> list[CommentPayload]:
            await gate.wait()
            return []

        client.fetch_new_comments = slow  # type: ignore[method-assign]
        first = asyncio.ensure_future(poller.poll_once())
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="already in progress"):
            await poller.poll_once()
        gate.set()
        assert await first == []

    @pytest.mark.asyncio()
    async def test_loop_survives_errors(
        self,
        client: MemoryChatClient,
        engine: ReconciliationEngine,
        events: EventHub,
        config: Any,
    ) -> None:
        config.poll_interval_seconds = 0
        calls = 0

        async def flaky() -> list[CommentPayload]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("offline")
            return []

        client.fetch_new_comments = flaky  # type: ignore[method-assign]
        poller = SyncPoller(client, engine, events, config)
        poller.start()
        try:
            for _ in range(20):
                await asyncio.sleep(0)
                if calls >= 2:
                    break
            assert calls >= 2
        finally:
            poller.stop()
