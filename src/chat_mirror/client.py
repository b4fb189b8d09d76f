"""Chat service client abstraction.

Provides a Protocol for the remote operations the mirror consumes and two
implementations:
- MemoryChatClient: In-memory service double (testing/simulator)
- HttpChatClient: Thin HTTP wrapper around the hosted chat API

The engine, poller and session only ever talk to the ChatClient protocol.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from .schema import (
    CommentPayload,
    RoomPayload,
    TopicPayload,
    UserIdentity,
    UserPayload,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ChatClient(Protocol):
    """Protocol for chat service operations."""

    async def login(self, identity: UserIdentity) -> UserPayload:
        """Log in (or register) and return the session info with its token."""
        ...

    def set_token(self, token: str) -> None:
        """Use this token for all further calls."""
        ...

    async def fetch_new_comments(self) -> list[CommentPayload]:
        """Comments that arrived since the previous fetch. Empty when none."""
        ...

    async def get_or_create_room(self, target_email: str) -> RoomPayload:
        """The 1:1 room with the target, created if needed."""
        ...

    async def list_topics(self, room_id: int | str) -> list[TopicPayload]:
        """All topics of a room."""
        ...

    async def post_comment(
        self, topic_id: int, message: str, unique_id: str
    ) -> CommentPayload:
        """Post a comment. Returns the server's copy."""
        ...

    async def load_comments(
        self, topic_id: int, last_comment_id: int = 0
    ) -> list[CommentPayload]:
        """A page of history, newest first, older than last_comment_id (0 = latest)."""
        ...


class MemoryChatClient:
    """In-memory chat service for testing and simulation.

    Holds rooms, topics and comments the way the hosted service would and
    records every call for inspection. No network calls.

    Test hooks:
    - ``post_error`` / ``login_error``: raised by the next matching call
    - ``post_gate``: an asyncio.Event that post_comment waits on, so a
      test can observe state while a submission is in flight
    - ``echo_posts``: when True, posted comments are queued for the next
      fetch_new_comments(), mimicking the sync feed
    """

    def __init__(self, page_size: int = 20, echo_posts: bool = True) -> None:
        self.page_size = page_size
        self.echo_posts = echo_posts
        self.token: str = ""
        self.calls: list[dict[str, Any]] = []
        self.rooms: dict[int | str, RoomPayload] = {}
        self.topics: dict[int | str, list[TopicPayload]] = {}
        self.history: dict[int, list[CommentPayload]] = {}
        self.inbox: list[CommentPayload] = []
        self.post_error: Exception | None = None
        self.login_error: Exception | None = None
        self.post_gate: asyncio.Event | None = None
        self._comment_ids = itertools.count(1000)
        self._room_ids = itertools.count(1)
        self._topic_ids = itertools.count(100)

    # --- Seeding (test setup) ---

    def seed_room(
        self, room: RoomPayload, topics: list[TopicPayload] | None = None
    ) -> RoomPayload:
        self.rooms[room.id] = room
        self.topics[room.id] = list(topics or [])
        return room

    def seed_history(self, topic_id: int, comments: list[CommentPayload]) -> None:
        """Store history oldest-first; served newest-first like the service."""
        self.history.setdefault(topic_id, []).extend(comments)

    def inject_comment(self, comment: CommentPayload) -> None:
        """Queue a comment for the next fetch_new_comments()."""
        self.inbox.append(comment)

    # --- ChatClient ---

    async def login(self, identity: UserIdentity) -> UserPayload:
        self.calls.append({"method": "login", "email": identity.email})
        if self.login_error is not None:
            error, self.login_error = self.login_error, None
            raise error
        return UserPayload(
            email=identity.email,
            username=identity.username or identity.email,
            avatar_url=identity.avatar_url,
            token=f"memory-token-{identity.email}",
        )

    def set_token(self, token: str) -> None:
        self.token = token

    async def fetch_new_comments(self) -> list[CommentPayload]:
        self.calls.append({"method": "fetch_new_comments"})
        batch, self.inbox = self.inbox, []
        return batch

    async def get_or_create_room(self, target_email: str) -> RoomPayload:
        self.calls.append({"method": "get_or_create_room", "target": target_email})
        for room in self.rooms.values():
            if room.name == target_email:
                return room
        room_id = next(self._room_ids)
        topic = TopicPayload(id=next(self._topic_ids), title=target_email)
        return self.seed_room(RoomPayload(id=room_id, name=target_email), [topic])

    async def list_topics(self, room_id: int | str) -> list[TopicPayload]:
        self.calls.append({"method": "list_topics", "room_id": room_id})
        if room_id not in self.rooms:
            raise ValueError(f"Unknown room: {room_id}")
        return list(self.topics.get(room_id, []))

    async def post_comment(
        self, topic_id: int, message: str, unique_id: str
    ) -> CommentPayload:
        self.calls.append(
            {
                "method": "post_comment",
                "topic_id": topic_id,
                "message": message,
                "unique_id": unique_id,
            }
        )
        if self.post_gate is not None:
            await self.post_gate.wait()
        if self.post_error is not None:
            error, self.post_error = self.post_error, None
            raise error
        comment = CommentPayload(
            id=next(self._comment_ids),
            room_id=self._room_of_topic(topic_id),
            topic_id=topic_id,
            message=message,
            unique_id=unique_id,
            created_at=datetime.now(UTC),
        )
        self.history.setdefault(topic_id, []).append(comment)
        if self.echo_posts:
            self.inbox.append(comment)
        return comment

    async def load_comments(
        self, topic_id: int, last_comment_id: int = 0
    ) -> list[CommentPayload]:
        self.calls.append(
            {
                "method": "load_comments",
                "topic_id": topic_id,
                "last_comment_id": last_comment_id,
            }
        )
        newest_first = list(reversed(self.history.get(topic_id, [])))
        if last_comment_id > 0:
            newest_first = [c for c in newest_first if c.id < last_comment_id]
        return newest_first[: self.page_size]

    def _room_of_topic(self, topic_id: int) -> int | str | None:
        for room_id, topics in self.topics.items():
            if any(t.id == topic_id for t in topics):
                return room_id
        return None


class HttpChatClient:
    """HTTP client for the hosted chat API.

    A thin wrapper: every call opens a short-lived httpx.AsyncClient,
    raises on HTTP errors and unwraps the ``{"results": ...}`` envelope.
    Transport failures propagate to the caller unchanged.
    """

    LOGIN_PATH = "/api/v2/mobile/login_or_register"
    SYNC_PATH = "/api/v2/mobile/sync"
    ROOM_PATH = "/api/v2/mobile/get_or_create_room_with_target"
    TOPICS_PATH = "/api/v2/mobile/topics"
    POST_COMMENT_PATH = "/api/v2/mobile/post_comment"
    LOAD_COMMENTS_PATH = "/api/v2/mobile/load_comments"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._token = ""
        self._last_comment_id = 0

    def set_token(self, token: str) -> None:
        self._token = token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.request(
                method, path, params=params, data=data, headers=headers
            )
            response.raise_for_status()
            body = response.json()
        if not isinstance(body, dict) or "results" not in body:
            error = body.get("error", "unknown") if isinstance(body, dict) else body
            raise RuntimeError(f"Chat API error on {path}: {error}")
        return body["results"]

    async def login(self, identity: UserIdentity) -> UserPayload:
        form = {
            "email": identity.email,
            "password": identity.key,
            "username": identity.username,
        }
        if identity.avatar_url:
            form["avatar_url"] = identity.avatar_url
        results = await self._request("POST", self.LOGIN_PATH, data=form)
        return UserPayload.model_validate(results["user"])

    async def fetch_new_comments(self) -> list[CommentPayload]:
        results = await self._request(
            "GET",
            self.SYNC_PATH,
            params={"last_received_comment_id": self._last_comment_id},
        )
        comments = [
            CommentPayload.model_validate(c) for c in results.get("comments", [])
        ]
        if comments:
            newest = max(c.id for c in comments)
            self._last_comment_id = max(self._last_comment_id, newest)
        return comments

    async def get_or_create_room(self, target_email: str) -> RoomPayload:
        results = await self._request(
            "POST", self.ROOM_PATH, data={"emails[]": target_email}
        )
        return RoomPayload.model_validate(results["room"])

    async def list_topics(self, room_id: int | str) -> list[TopicPayload]:
        results = await self._request(
            "GET", self.TOPICS_PATH, params={"room_id": room_id}
        )
        return [TopicPayload.model_validate(t) for t in results.get("topics", [])]

    async def post_comment(
        self, topic_id: int, message: str, unique_id: str
    ) -> CommentPayload:
        results = await self._request(
            "POST",
            self.POST_COMMENT_PATH,
            data={
                "topic_id": topic_id,
                "comment": message,
                "unique_temp_id": unique_id,
            },
        )
        return CommentPayload.model_validate(results["comment"])

    async def load_comments(
        self, topic_id: int, last_comment_id: int = 0
    ) -> list[CommentPayload]:
        results = await self._request(
            "GET",
            self.LOAD_COMMENTS_PATH,
            params={"topic_id": topic_id, "last_comment_id": last_comment_id},
        )
        return [CommentPayload.model_validate(c) for c in results.get("comments", [])]
