"""
Session context shared by the synchronization components.

A Session owns the in-memory chat/message collections for one signed-in
viewer. Components receive the Session explicitly; nothing reads global
state. Collections are mutated only through the engine components and are
handed to other callers as deep-copied snapshots.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Union

from chatsync.config import Settings, settings as default_settings
from chatsync.schemas.chat import Chat, UserProfile
from chatsync.schemas.message import Message
from chatsync.schemas.social import Notification, Relationship
from chatsync.store.base import MessageStoreService

logger = logging.getLogger(__name__)

MessageId = Union[int, str]


class NotificationPermission(str, Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


class SyncState:
    """The collections owned by one session."""

    def __init__(self):
        self.chats: Dict[int, Chat] = {}
        self.chat_order: List[int] = []
        self.messages: Dict[int, List[Message]] = {}
        self.relationships: Dict[int, Relationship] = {}
        self.notifications: Dict[int, Notification] = {}
        self.users: Dict[int, UserProfile] = {}
        self.first_unread_mention: Dict[int, MessageId] = {}

    def clear(self) -> None:
        self.chats.clear()
        self.chat_order.clear()
        self.messages.clear()
        self.relationships.clear()
        self.notifications.clear()
        self.users.clear()
        self.first_unread_mention.clear()

    def sort_chats(self) -> None:
        """Most recent activity first; ties broken by id so the order is deterministic."""
        self.chat_order = [
            chat.id for chat in sorted(
                self.chats.values(),
                key=lambda chat: (chat.activity_timestamp, chat.id),
                reverse=True,
            )
        ]

    def chat_messages(self, chat_id: int) -> List[Message]:
        return self.messages.setdefault(chat_id, [])

    def find_message(self, message_id: MessageId, chat_id: Optional[int] = None):
        """Return (chat_id, index) of a message, or (None, None)."""
        chat_ids = [chat_id] if chat_id is not None else list(self.messages)
        for candidate in chat_ids:
            for index, message in enumerate(self.messages.get(candidate, ())):
                if message.id == message_id:
                    return candidate, index
        return None, None

    def remove_chat(self, chat_id: int) -> Optional[Chat]:
        chat = self.chats.pop(chat_id, None)
        self.messages.pop(chat_id, None)
        self.first_unread_mention.pop(chat_id, None)
        if chat_id in self.chat_order:
            self.chat_order.remove(chat_id)
        return chat


class Session:
    """Viewer identity, store handle, owned state and UI focus for one sign-in."""

    def __init__(
        self,
        viewer: UserProfile,
        store: MessageStoreService,
        settings: Settings = default_settings,
    ):
        self.viewer = viewer
        self.store = store
        self.settings = settings
        self.state = SyncState()
        self.open_chat_id: Optional[int] = None
        self.window_focused = True
        self.notification_permission = NotificationPermission.DEFAULT
        self.active = False

    @property
    def viewer_id(self) -> int:
        return self.viewer.id

    def init(self) -> None:
        if self.active:
            return
        self.state.clear()
        self.open_chat_id = None
        self.active = True
        logger.info("Session started for viewer %s", self.viewer_id)

    def teardown(self) -> None:
        if not self.active:
            return
        self.active = False
        self.state.clear()
        self.open_chat_id = None
        logger.info("Session closed for viewer %s", self.viewer_id)

    def is_chat_active(self, chat_id: int) -> bool:
        """True when the chat is the open one and the window has focus."""
        return self.open_chat_id == chat_id and self.window_focused

    @property
    def permission_granted(self) -> bool:
        return self.notification_permission == NotificationPermission.GRANTED
