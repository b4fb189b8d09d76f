"""Sync poller.

Fetches newly arrived comments, routes them into the mirror and tells
observers about the batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import ChatConfig
from .conventions import EVENT_NEW_MESSAGES
from .engine import ReconciliationEngine
from .events import EventHub
from .models import Comment, Room, RoomId
from .schema import CommentPayload

logger = logging.getLogger(__name__)


def group_by_room(
    batch: list[CommentPayload],
) -> dict[RoomId | None, list[CommentPayload]]:
    """Group comments by room_id, keeping first-seen room order."""
    groups: dict[RoomId | None, list[CommentPayload]] = {}
    for payload in batch:
        groups.setdefault(payload.room_id, []).append(payload)
    return groups


class SyncPoller:
    """Polls for new comments on a configurable interval.

    poll_once() is the unit of work and propagates fetch errors to its
    caller. The background loop started by start() logs them and keeps
    polling.
    """

    def __init__(
        self,
        client: Any,
        engine: ReconciliationEngine,
        events: EventHub,
        config: ChatConfig,
    ) -> None:
        self._client = client
        self._engine = engine
        self._events = events
        self._config = config
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._in_flight = False

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    def start(self) -> None:
        """Start the background polling task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._poll_loop())
        logger.info(
            "Sync polling started (interval: %ds)", self._config.poll_interval_seconds
        )

    def stop(self) -> None:
        """Stop the background polling task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Sync polling stopped")

    async def poll_once(self) -> list[CommentPayload]:
        """Fetch, route and announce one batch. Returns the raw batch."""
        if self._in_flight:
            raise RuntimeError("A poll is already in progress")
        self._in_flight = True
        try:
            batch = await self._client.fetch_new_comments()
        finally:
            self._in_flight = False

        if not batch:
            return []

        room: Room | None
        for room_id, payloads in group_by_room(batch).items():
            if room_id is None:
                room = self._engine.selection.room
                if room is None:
                    logger.warning(
                        "Dropping %d synced comment(s) with no room", len(payloads)
                    )
                    continue
            else:
                first = payloads[0]
                room = self._engine.get_or_create_room(
                    room_id, name=first.email or first.username_real
                )
            for payload in payloads:
                self._engine.receive(
                    Comment.from_payload(payload), payload.unique_id, room=room
                )

        logger.debug("Synced %d comment(s)", len(batch))
        await self._events.emit(EVENT_NEW_MESSAGES, batch)
        return batch

    async def _poll_loop(self) -> None:
        """Background polling loop."""
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Error in sync poll loop")
            await asyncio.sleep(self._config.poll_interval_seconds)
