"""Pydantic schema for payloads exchanged with the chat service.

These models describe what collaborators hand to the engine, not the
service's wire format. Clients parse whatever they receive into these
shapes; unknown fields are ignored so server additions never break the
mirror.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _flatten_avatar(value: Any) -> Any:
    # Some endpoints nest the URL as {"avatar": {"url": ...}}
    if isinstance(value, dict):
        inner = value.get("avatar", value)
        if isinstance(inner, dict):
            return inner.get("url", "")
        return inner
    return value


AvatarUrl = Annotated[str, BeforeValidator(_flatten_avatar)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UserIdentity(_Payload):
    """Credentials and profile sent to the login collaborator."""

    email: str
    key: str = ""
    username: str = ""
    avatar_url: AvatarUrl = ""


class UserPayload(_Payload):
    """Session info returned by a successful login."""

    email: str
    username: str = ""
    avatar_url: AvatarUrl = ""
    token: str = ""


class ParticipantPayload(_Payload):
    email: str = ""
    username: str = ""
    avatar_url: AvatarUrl = ""


class CommentPayload(_Payload):
    """A comment as delivered by sync, history or post responses."""

    id: int
    room_id: int | str | None = None
    topic_id: int | None = None
    comment_before_id: int | None = None
    message: str = ""
    username_as: str = ""
    username: str = ""
    username_real: str = ""
    email: str = ""
    user_avatar: AvatarUrl = ""
    unique_id: str = ""
    created_at: datetime | None = None

    @field_validator("message", "unique_id", "username_as", "username", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class TopicPayload(_Payload):
    id: int
    title: str = ""
    comment_unread: int = 0
    deleted: bool = False
    unread: bool = False


class RoomPayload(_Payload):
    id: int | str
    name: str = ""
    room_avatar: AvatarUrl = ""
    room_type: str = ""
    secret_code: str = ""
    code_en: str = ""
    participants: list[ParticipantPayload] = Field(default_factory=list)
    last_comment_id: int = 0
    last_comment_message: str = ""
    last_comment_message_created_at: datetime | None = None
    last_topic_id: int | None = None
    last_comment_topic_title: str = ""
    count_notif: int = 0
    comments: list[CommentPayload] = Field(default_factory=list)
