"""Chat session facade.

The object applications hold. It logs in, keeps the selection, lazily
loads topics and history, and hands sends and syncs to the engine.
It holds no reconciliation rules of its own.

Architecture:
    ChatClient -> SyncPoller -> ReconciliationEngine -> EventHub -> host
    host -> ChatSession.submit_comment -> ReconciliationEngine -> ChatClient
"""

from __future__ import annotations

import logging
from typing import Any

from .client import HttpChatClient, MemoryChatClient
from .config import ChatConfig
from .conventions import EVENT_LOGIN_SUCCESS
from .engine import ReconciliationEngine, UnreadHook
from .events import EventHub, Observer
from .models import Comment, Room, RoomId, SenderIdentity, Topic
from .poller import SyncPoller
from .schema import CommentPayload, UserPayload

logger = logging.getLogger(__name__)


class ChatSession:
    """One user's view of the chat service.

    Construct explicitly and pass it to whoever needs it; there is no
    process-wide instance. Configuration is validated here, before any
    network activity.
    """

    def __init__(
        self,
        config: ChatConfig,
        client: Any | None = None,
        events: EventHub | None = None,
        unread_hook: UnreadHook | None = None,
    ) -> None:
        config.validate()
        self.config = config

        if client is None:
            if config.simulator_mode:
                logger.info("Chat session starting in simulator mode")
                client = MemoryChatClient()
            else:
                client = HttpChatClient(
                    config.effective_base_url, timeout=config.request_timeout
                )
        self.client = client
        self.events = events or EventHub()
        self.engine = ReconciliationEngine(
            client,
            sender=SenderIdentity(
                username_as=config.username or config.email,
                username_real=config.email,
                avatar=config.avatar_url,
            ),
            unread_hook=unread_hook,
        )
        self.poller = SyncPoller(client, self.engine, self.events, config)

        self.user: UserPayload | None = None
        self.is_loading = False

    # --- Observers ---

    def on(self, event: str, observer: Observer) -> None:
        self.events.subscribe(event, observer)

    def off(self, event: str, observer: Observer) -> bool:
        return self.events.unsubscribe(event, observer)

    # --- State ---

    @property
    def is_login(self) -> bool:
        return self.user is not None

    @property
    def rooms(self) -> list[Room]:
        return self.engine.rooms

    @property
    def selected_room(self) -> Room | None:
        return self.engine.selection.room

    @property
    def selected_topic(self) -> Topic | None:
        return self.engine.selection.topic

    # --- Authentication ---

    async def connect(self) -> UserPayload:
        """Log in or register, then announce login_success."""
        user = await self.client.login(self.config.identity)
        self.client.set_token(user.token)
        self.user = user
        logger.info("Logged in as %s", user.email)
        await self.events.emit(EVENT_LOGIN_SUCCESS, user)
        return user

    # --- Rooms and topics ---

    async def chat_target(self, email: str) -> Room:
        """Select the room named after email, creating it remotely if needed."""
        room = self.engine.get_room_by_name(email)
        if room is not None:
            self.engine.selection.room = room
            return room

        self.is_loading = True
        try:
            payload = await self.client.get_or_create_room(email)
        finally:
            self.is_loading = False
        room = self.engine.add_room(Room.from_payload(payload))
        self.engine.selection.room = room
        return room

    async def load_topics(self, room_id: RoomId) -> list[Topic]:
        """Load a room's topics, then the first topic's history if empty."""
        room = self._require_room(room_id)
        payloads = await self.client.list_topics(room_id)
        self.engine.register_topics(room, payloads)
        if room.topics and not room.topics[0].comments:
            await self.load_comments(room.topics[0].id)
        return room.topics

    async def load_comments(
        self, topic_id: int, last_comment_id: int = 0
    ) -> list[CommentPayload]:
        """Load one history page into the topic. last_comment_id > 0 backfills."""
        room = self.engine.room_of_topic(topic_id)
        topic = room.get_topic(topic_id) if room is not None else None
        if topic is None:
            raise ValueError(f"Unknown topic: {topic_id}")
        try:
            payloads = await self.client.load_comments(topic_id, last_comment_id)
        except Exception:
            logger.error("Error loading comments for topic %s", topic_id)
            raise
        self.engine.merge_history(topic, payloads, backfill=last_comment_id > 0)
        logger.debug("Loaded %d comment(s) into topic %s", len(payloads), topic_id)
        return payloads

    async def select_room(self, room_id: RoomId) -> Room:
        room = self._require_room(room_id)
        if not room.topics:
            await self.load_topics(room_id)
        self.engine.selection.room = room
        self._focus(room.topics[0] if room.topics else None)
        return room

    async def select_topic(self, topic_id: int) -> Topic:
        room = self.engine.selection.room
        if room is None:
            raise RuntimeError("No room selected")
        topic = room.get_topic(topic_id)
        if topic is None:
            raise ValueError(f"Unknown topic {topic_id} in room {room.id}")
        if not topic.comments:
            await self.load_comments(topic_id)
        self._focus(topic)
        return topic

    def sort_rooms(self) -> list[Room]:
        return self.engine.sort_rooms()

    def _require_room(self, room_id: RoomId) -> Room:
        room = self.engine.get_room(room_id)
        if room is None:
            raise ValueError(f"Unknown room: {room_id}")
        return room

    def _focus(self, topic: Topic | None) -> None:
        self.engine.selection.topic = topic
        if topic is not None:
            topic.mark_as_read()

    # --- Comments ---

    async def submit_comment(
        self, topic_id: int, message: str, unique_id: str | None = None
    ) -> CommentPayload:
        return await self.engine.submit(topic_id, message, unique_id)

    def receive_comment(self, comment: Comment, unique_id: str | None = None) -> bool:
        return self.engine.receive(comment, unique_id)

    async def resubmit_comment(self, comment: Comment) -> CommentPayload:
        return await self.engine.resubmit(comment)

    def discard_comment(self, comment: Comment) -> bool:
        return self.engine.discard(comment)

    # --- Sync ---

    async def sync(self) -> list[CommentPayload]:
        return await self.poller.poll_once()

    def start_polling(self) -> None:
        self.poller.start()

    def stop_polling(self) -> None:
        self.poller.stop()
