"""Reconciliation engine.

Folds server data and local sends into the room/topic/comment mirror.

Rules:
- one Room per id; unknown room ids are synthesized on first reference
- confirmed comments are unique by id inside a collection
- an optimistic comment lives under a negative placeholder id and is
  matched to its confirmed copy by unique_id
- PENDING moves to SENT or FAILED, nothing else moves

Everything here runs on one event loop. Awaits happen only around the
submission collaborator, so interleavings are bounded to "before" and
"after" a post, and the dedup rules make every ordering converge.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .models import (
    Comment,
    Room,
    RoomId,
    SenderIdentity,
    Topic,
    new_unique_id,
)
from .schema import CommentPayload, TopicPayload

logger = logging.getLogger(__name__)

UnreadHook = Callable[["ReconciliationEngine", Room, Comment], None]


@dataclass
class Selection:
    """The single selected room/topic slot."""

    room: Room | None = None
    topic: Topic | None = None


def mark_unread_unless_selected(own_email: str) -> UnreadHook:
    """Unread policy: bump the owning topic unless selected or sent by us."""

    def hook(engine: ReconciliationEngine, room: Room, comment: Comment) -> None:
        if comment.sender.username_real == own_email or comment.topic_id is None:
            return
        topic = room.get_topic(comment.topic_id)
        if topic is None or topic is engine.selection.topic:
            return
        topic.increase_unread_count()

    return hook


class ReconciliationEngine:
    """Owns the room registry, the selection slot and the optimistic lifecycle."""

    def __init__(
        self,
        client: Any,  # ChatClient protocol
        sender: SenderIdentity | None = None,
        unread_hook: UnreadHook | None = None,
    ) -> None:
        self._client = client
        self.sender = sender or SenderIdentity()
        self.unread_hook = unread_hook
        self.selection = Selection()
        self._rooms: list[Room] = []
        self._rooms_by_id: dict[RoomId, Room] = {}
        # topic_id -> owning Room
        self._topic_rooms: dict[int, Room] = {}

    # --- Registry ---

    @property
    def rooms(self) -> list[Room]:
        return list(self._rooms)

    def add_room(self, room: Room) -> Room:
        """Register a room, or refresh the registered instance for a known id.

        Returns the registered instance.
        """
        existing = self._rooms_by_id.get(room.id)
        if existing is not None:
            if existing is not room:
                existing.update_from(room)
                for topic in existing.topics:
                    self._topic_rooms[topic.id] = existing
            return existing
        self._rooms.append(room)
        self._rooms_by_id[room.id] = room
        for topic in room.topics:
            self._topic_rooms[topic.id] = room
        return room

    def get_room(self, room_id: RoomId) -> Room | None:
        return self._rooms_by_id.get(room_id)

    def get_room_by_name(self, name: str) -> Room | None:
        for room in self._rooms:
            if room.name == name:
                return room
        return None

    def get_or_create_room(self, room_id: RoomId, name: str = "") -> Room:
        room = self._rooms_by_id.get(room_id)
        if room is None:
            room = self.add_room(Room(id=room_id, name=name))
            logger.info("Synthesized room %s (%s)", room_id, name or "unnamed")
        return room

    def room_of_topic(self, topic_id: int) -> Room | None:
        room = self._topic_rooms.get(topic_id)
        if room is not None and room.get_topic(topic_id) is not None:
            return room
        # Topics added straight onto a Room bypass the index
        for candidate in self._rooms:
            if candidate.get_topic(topic_id) is not None:
                self._topic_rooms[topic_id] = candidate
                return candidate
        return None

    def register_topics(
        self, room: Room, payloads: Iterable[Topic | TopicPayload]
    ) -> list[Topic]:
        topics = [room.upsert_topic(p) for p in payloads]
        for topic in topics:
            self._topic_rooms[topic.id] = room
        room.is_loaded = True
        return topics

    def merge_history(
        self,
        topic: Topic,
        payloads: list[CommentPayload],
        backfill: bool = False,
    ) -> int:
        """Fold a newest-first history page into a topic, oldest-first.

        backfill=True puts the page in front of what the topic holds.
        Returns the number of comments in the page.
        """
        ordered = [Comment.from_payload(p) for p in reversed(payloads)]
        if backfill:
            topic.prepend_comments(ordered)
        else:
            for comment in ordered:
                topic.upsert_comment(comment)
        topic.is_loaded = True
        return len(ordered)

    def sort_rooms(self) -> list[Room]:
        """Order rooms by last_comment_id, newest first."""
        self._rooms.sort(key=lambda r: r.last_comment_id or 0, reverse=True)
        return self.rooms

    # --- Optimistic lifecycle ---

    def _submit_target(self, topic_id: int, room: Room | None) -> Room:
        target = room or self.selection.room or self.room_of_topic(topic_id)
        if target is None:
            raise RuntimeError(f"No room selected for topic {topic_id}")
        return target

    async def submit(
        self,
        topic_id: int,
        message: str,
        unique_id: str | None = None,
        room: Room | None = None,
    ) -> CommentPayload:
        """Echo a PENDING comment locally, then post it.

        On success the placeholder is marked SENT and dropped; the confirmed
        copy comes back through sync. On failure it is marked FAILED, kept
        in place and the error is re-raised.
        """
        target = self._submit_target(topic_id, room)
        if not unique_id:
            unique_id = new_unique_id()
        pending = Comment.optimistic(
            message,
            sender=self.sender,
            unique_id=unique_id,
            topic_id=topic_id,
            room_id=target.id,
        )
        self.receive(pending, unique_id, room=target)

        try:
            response = await self._client.post_comment(topic_id, message, unique_id)
        except Exception:
            pending.mark_failed()
            logger.warning(
                "Comment %s (%s) failed to post to topic %s",
                pending.id,
                unique_id,
                topic_id,
                exc_info=True,
            )
            raise

        pending.mark_sent()
        target.remove_comment(pending.id)
        return response

    def receive(
        self,
        comment: Comment,
        unique_id: str | None = None,
        room: Room | None = None,
    ) -> bool:
        """Insert a comment unless its id is present. Returns True when inserted.

        A confirmed comment carrying a known unique_id supersedes the
        matching pending or sent placeholder. A comment with no selected
        room and no room_id is logged and dropped.
        """
        target = room or self.selection.room
        if target is None:
            if comment.room_id is None:
                logger.warning("Dropping comment %s with no room", comment.id)
                return False
            target = self.get_or_create_room(comment.room_id)

        if unique_id and comment.is_confirmed:
            superseded = [
                c
                for c in target.comments
                if c.unique_id == unique_id
                and not c.is_confirmed
                and not c.is_failed
            ]
            for placeholder in superseded:
                target.remove_comment(placeholder.id)
                logger.debug(
                    "Placeholder %s superseded by comment %s",
                    placeholder.id,
                    comment.id,
                )

        if target.get_comment(comment.id) is not None:
            logger.debug("Room %s: comment %s already present", target.id, comment.id)
            return False
        target.comments.append(comment)
        if self.unread_hook is not None:
            self.unread_hook(self, target, comment)
        return True

    def discard(self, comment: Comment, room: Room | None = None) -> bool:
        """Remove a comment the host no longer wants, e.g. a FAILED placeholder."""
        target = room or self.selection.room
        if target is None and comment.room_id is not None:
            target = self.get_room(comment.room_id)
        if target is None:
            return False
        return target.remove_comment(comment.id)

    async def resubmit(
        self, comment: Comment, room: Room | None = None
    ) -> CommentPayload:
        """Drop a FAILED placeholder and post its message under a new unique_id."""
        if not comment.is_failed:
            raise ValueError(
                f"Comment {comment.id} is {comment.delivery_state}, not failed"
            )
        if comment.topic_id is None:
            raise ValueError(f"Comment {comment.id} has no topic")
        target = room or (
            self.get_room(comment.room_id) if comment.room_id is not None else None
        )
        self.discard(comment, room=target)
        return await self.submit(comment.topic_id, comment.message, room=target)
