"""Entities of the local chat mirror.

- Comment: one message plus its delivery state
- Topic: an ordered thread of comments
- Room: a conversation holding topics and a flat comment cache

Entities only guard their own collections. Cross-room bookkeeping
(registry, selection, optimistic sends) lives in the engine.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from .conventions import (
    ATTACHMENT_CLOSE,
    ATTACHMENT_OPEN,
    IMAGE_EXTENSIONS,
    UNIQUE_ID_PREFIX,
)
from .schema import CommentPayload, ParticipantPayload, RoomPayload, TopicPayload

logger = logging.getLogger(__name__)

RoomId = int | str

_IMAGE_RE = re.compile(r"\.(" + "|".join(IMAGE_EXTENSIONS) + ")", re.IGNORECASE)

# --- Process-wide id sources ---

_placeholder_ids = itertools.count(-1, -1)
_unique_id_lock = threading.Lock()
_last_unique_ms = 0


def next_placeholder_id() -> int:
    """Next negative placeholder id. Strictly decreasing, never reused."""
    return next(_placeholder_ids)


def new_unique_id() -> str:
    """Wall-clock based correlation token, strictly increasing per process."""
    global _last_unique_ms
    with _unique_id_lock:
        now = int(time.time() * 1000)
        _last_unique_ms = max(now, _last_unique_ms + 1)
        return f"{UNIQUE_ID_PREFIX}{_last_unique_ms}"


class DeliveryState(StrEnum):
    """Delivery state of a comment. Only PENDING may transition."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class SenderIdentity:
    """Who wrote a comment, or who takes part in a room."""

    username_as: str = ""  # display name
    username_real: str = ""  # real identity (email)
    avatar: str = ""

    @classmethod
    def from_participant(cls, payload: ParticipantPayload) -> SenderIdentity:
        return cls(
            username_as=payload.username or payload.email,
            username_real=payload.email,
            avatar=payload.avatar_url,
        )


@dataclass(eq=False)
class Comment:
    """A single chat message.

    Server comments arrive SENT with a positive id. Optimistic comments
    start PENDING with a negative placeholder id and are matched to their
    confirmed copy through ``unique_id``.
    """

    id: int
    message: str = ""
    sender: SenderIdentity = field(default_factory=SenderIdentity)
    unique_id: str = ""
    topic_id: int | None = None
    room_id: RoomId | None = None
    before_id: int | None = None
    created_at: datetime | None = None
    delivery_state: DeliveryState = DeliveryState.SENT
    attachment: Any = None

    @classmethod
    def from_payload(cls, payload: CommentPayload) -> Comment:
        return cls(
            id=payload.id,
            message=payload.message,
            sender=SenderIdentity(
                username_as=payload.username_as or payload.username,
                username_real=payload.username_real or payload.email,
                avatar=payload.user_avatar,
            ),
            unique_id=payload.unique_id,
            topic_id=payload.topic_id,
            room_id=payload.room_id,
            before_id=payload.comment_before_id,
            created_at=payload.created_at,
        )

    @classmethod
    def optimistic(
        cls,
        message: str,
        sender: SenderIdentity,
        unique_id: str,
        topic_id: int | None = None,
        room_id: RoomId | None = None,
    ) -> Comment:
        """Build a PENDING local echo with a fresh placeholder id."""
        comment = cls(
            id=next_placeholder_id(),
            message=message,
            sender=sender,
            topic_id=topic_id,
            room_id=room_id,
            created_at=datetime.now().astimezone(),
            delivery_state=DeliveryState.PENDING,
        )
        comment.attach_unique_id(unique_id)
        return comment

    # --- Identity ---

    @property
    def is_confirmed(self) -> bool:
        return self.id > 0

    def attach_unique_id(self, unique_id: str) -> None:
        if self.unique_id and self.unique_id != unique_id:
            raise ValueError(
                f"Comment {self.id} already carries unique_id {self.unique_id!r}"
            )
        self.unique_id = unique_id

    # --- Display ---

    @property
    def date(self) -> str:
        return self.created_at.strftime("%Y-%m-%d") if self.created_at else ""

    @property
    def time(self) -> str:
        return self.created_at.strftime("%H:%M %p") if self.created_at else ""

    # --- Attachments ---

    def is_attachment(self) -> bool:
        return self.message.startswith(ATTACHMENT_OPEN)

    def is_image_attachment(self) -> bool:
        return self.is_attachment() and _IMAGE_RE.search(self.message) is not None

    def attachment_uri(self) -> str | None:
        if not self.is_attachment():
            return None
        body = self.message.removeprefix(ATTACHMENT_OPEN).removesuffix(ATTACHMENT_CLOSE)
        return body.strip()

    def set_attachment(self, attachment: Any) -> None:
        self.attachment = attachment

    # --- Delivery state ---

    @property
    def is_pending(self) -> bool:
        return self.delivery_state is DeliveryState.PENDING

    @property
    def is_sent(self) -> bool:
        return self.delivery_state is DeliveryState.SENT

    @property
    def is_failed(self) -> bool:
        return self.delivery_state is DeliveryState.FAILED

    def _transition(self, target: DeliveryState) -> None:
        if self.delivery_state is target:
            return
        if self.delivery_state is not DeliveryState.PENDING:
            raise ValueError(
                f"Comment {self.id}: cannot move from {self.delivery_state} to {target}"
            )
        self.delivery_state = target

    def mark_pending(self) -> None:
        self._transition(DeliveryState.PENDING)

    def mark_sent(self) -> None:
        self._transition(DeliveryState.SENT)

    def mark_failed(self) -> None:
        self._transition(DeliveryState.FAILED)

    def update_from(self, other: Comment) -> None:
        """Last-write-wins merge of another copy of the same comment."""
        self.message = other.message
        self.sender = other.sender
        self.before_id = other.before_id
        if other.created_at is not None:
            self.created_at = other.created_at
        if other.unique_id:
            self.unique_id = other.unique_id
        if other.topic_id is not None:
            self.topic_id = other.topic_id
        if other.room_id is not None:
            self.room_id = other.room_id
        if other.attachment is not None:
            self.attachment = other.attachment


def _as_comment(item: Comment | CommentPayload) -> Comment:
    return item if isinstance(item, Comment) else Comment.from_payload(item)


@dataclass(eq=False)
class Topic:
    """A conversation thread inside a room."""

    id: int
    title: str = ""
    unread_count: int = 0
    deleted: bool = False
    unread: bool = False
    comments: list[Comment] = field(default_factory=list)
    is_loaded: bool = False

    @classmethod
    def from_payload(cls, payload: TopicPayload) -> Topic:
        return cls(
            id=payload.id,
            title=payload.title,
            unread_count=max(payload.comment_unread, 0),
            deleted=payload.deleted,
            unread=payload.unread,
        )

    def get_comment(self, comment_id: int) -> Comment | None:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        return None

    def upsert_comment(self, item: Comment | CommentPayload) -> Comment:
        """Merge into the existing copy with the same id, or append."""
        incoming = _as_comment(item)
        existing = self.get_comment(incoming.id)
        if existing is not None:
            existing.update_from(incoming)
            return existing
        self.comments.append(incoming)
        return incoming

    def prepend_comments(self, items: Iterable[Comment | CommentPayload]) -> int:
        """Put older comments (oldest-first) in front. Known ids are skipped."""
        known = {c.id for c in self.comments}
        older = []
        for item in items:
            comment = _as_comment(item)
            if comment.id in known:
                continue
            known.add(comment.id)
            older.append(comment)
        self.comments[:0] = older
        return len(older)

    def remove_comment(self, comment_id: int) -> bool:
        for index, comment in enumerate(self.comments):
            if comment.id == comment_id:
                del self.comments[index]
                return True
        return False

    def update_from(self, other: Topic) -> None:
        self.title = other.title
        self.unread_count = other.unread_count
        self.deleted = other.deleted
        self.unread = other.unread

    def mark_as_read(self) -> None:
        self.unread_count = 0

    def increase_unread_count(self) -> None:
        self.unread_count += 1


@dataclass(eq=False)
class Room:
    """A conversation container.

    ``comments`` is the flat cache that receives synced and optimistic
    comments; ``topics`` stays empty until loaded on demand.
    """

    id: RoomId
    name: str = ""
    avatar: str = ""
    room_type: str = ""
    secret_code: str = ""
    code_en: str = ""
    participants: list[SenderIdentity] = field(default_factory=list)
    topics: list[Topic] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    last_comment_id: int = 0
    last_comment_message: str = ""
    last_comment_message_created_at: datetime | None = None
    last_comment_topic_id: int | None = None
    last_comment_topic_title: str = ""
    count_notif: int = 0
    is_loaded: bool = False

    @classmethod
    def from_payload(cls, payload: RoomPayload) -> Room:
        room = cls(
            id=payload.id,
            name=payload.name,
            avatar=payload.room_avatar,
            room_type=payload.room_type,
            secret_code=payload.secret_code,
            code_en=payload.code_en,
            participants=[
                SenderIdentity.from_participant(p) for p in payload.participants
            ],
            last_comment_id=payload.last_comment_id,
            last_comment_message=payload.last_comment_message,
            last_comment_message_created_at=payload.last_comment_message_created_at,
            last_comment_topic_id=payload.last_topic_id,
            last_comment_topic_title=payload.last_comment_topic_title,
            count_notif=payload.count_notif,
        )
        room.merge_comments(payload.comments)
        return room

    def update_from(self, other: Room) -> None:
        """Refresh server metadata from another copy of this room.

        Topics are upserted and comments merged by id, so loaded history
        and local placeholders survive.
        """
        if other.name:
            self.name = other.name
        self.avatar = other.avatar
        self.room_type = other.room_type
        self.secret_code = other.secret_code
        self.code_en = other.code_en
        self.participants = list(other.participants)
        self.last_comment_id = other.last_comment_id
        self.last_comment_message = other.last_comment_message
        self.last_comment_message_created_at = other.last_comment_message_created_at
        self.last_comment_topic_id = other.last_comment_topic_id
        self.last_comment_topic_title = other.last_comment_topic_title
        self.count_notif = other.count_notif
        for topic in other.topics:
            self.upsert_topic(topic)
        self.merge_comments(other.comments)

    # --- Flat comment cache ---

    def get_comment(self, comment_id: int) -> Comment | None:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        return None

    def find_by_unique_id(self, unique_id: str) -> Comment | None:
        for comment in self.comments:
            if comment.unique_id == unique_id:
                return comment
        return None

    def merge_comments(
        self, items: Iterable[Comment | CommentPayload]
    ) -> list[Comment]:
        """Append comments whose id is not present yet. Returns the added ones.

        A second delivery of a known id is a harmless duplicate, not an update.
        """
        added = []
        for item in items:
            if self.get_comment(item.id) is not None:
                logger.debug("Room %s: comment %s already present", self.id, item.id)
                continue
            comment = _as_comment(item)
            self.comments.append(comment)
            added.append(comment)
        return added

    # Removals edit the list in place; hosts may hold a reference to it.

    def remove_comment(self, comment_id: int) -> bool:
        before = len(self.comments)
        self.comments[:] = [c for c in self.comments if c.id != comment_id]
        return len(self.comments) != before

    def remove_by_unique_id(self, unique_id: str) -> int:
        before = len(self.comments)
        self.comments[:] = [c for c in self.comments if c.unique_id != unique_id]
        return before - len(self.comments)

    # --- Topics ---

    def get_topic(self, topic_id: int) -> Topic | None:
        for topic in self.topics:
            if topic.id == topic_id:
                return topic
        return None

    def upsert_topic(self, item: Topic | TopicPayload) -> Topic:
        incoming = item if isinstance(item, Topic) else Topic.from_payload(item)
        existing = self.get_topic(incoming.id)
        if existing is not None:
            existing.update_from(incoming)
            return existing
        self.topics.append(incoming)
        return incoming

    def remove_topic(self, topic: Topic) -> bool:
        for index, candidate in enumerate(self.topics):
            if candidate.id == topic.id:
                del self.topics[index]
                return True
        return False

    # --- Accounting ---

    def unread_count(self) -> int:
        """Server hint until topics are loaded, then the per-topic sum."""
        if not self.topics:
            return self.count_notif
        return sum(topic.unread_count for topic in self.topics)

    def get_participant(self, email: str) -> SenderIdentity | None:
        for participant in self.participants:
            if participant.username_real == email:
                return participant
        return None
