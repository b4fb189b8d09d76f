"""chat-mirror: a local mirror of chat rooms, topics and comments.

Keeps rooms, topics and comments in memory, folds polled server data into
them without duplicates, and echoes outgoing comments optimistically until
the server confirms or rejects them.
"""

from .client import ChatClient, HttpChatClient, MemoryChatClient
from .config import ChatConfig
from .conventions import EVENT_LOGIN_SUCCESS, EVENT_NEW_MESSAGES
from .engine import ReconciliationEngine, Selection, mark_unread_unless_selected
from .events import EventHub
from .models import Comment, DeliveryState, Room, SenderIdentity, Topic
from .poller import SyncPoller
from .session import ChatSession

__version__ = "0.1.0"

__all__ = [
    "EVENT_LOGIN_SUCCESS",
    "EVENT_NEW_MESSAGES",
    "ChatClient",
    "ChatConfig",
    "ChatSession",
    "Comment",
    "DeliveryState",
    "EventHub",
    "HttpChatClient",
    "MemoryChatClient",
    "ReconciliationEngine",
    "Room",
    "Selection",
    "SenderIdentity",
    "SyncPoller",
    "Topic",
    "mark_unread_unless_selected",
]
