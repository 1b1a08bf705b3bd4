import logging
import re
from typing import Iterable, Optional

from chatsync.schemas.chat import Chat
from chatsync.schemas.message import Message
from chatsync.session import MessageId, Session

logger = logging.getLogger(__name__)


def detect_mention(body: Optional[str], username: Optional[str]) -> bool:
    """
    Whether ``body`` addresses ``username`` with an ``@username`` or ``@everyone`` token.

    Matching is case-insensitive and bounded on both sides, so an address
    like ``alice@example.com`` or a longer name like ``@alice123`` does not
    count as a mention of ``alice``.
    """
    if not body:
        return False
    names = ["everyone"]
    if username:
        names.insert(0, re.escape(username))
    pattern = r"(?<!\w)@(?:%s)(?!\w)" % "|".join(names)
    return re.search(pattern, body, re.IGNORECASE) is not None


class UnreadAndMentionTracker:
    """Per-chat unread counters and first-unread-mention markers."""

    def __init__(self, session: Session):
        self.session = session

    @property
    def state(self):
        return self.session.state

    def _is_mention(self, message: Message) -> bool:
        if message.text == self.session.settings.DELETED_MESSAGE_MARKER:
            return False
        return detect_mention(message.text, self.session.viewer.username)

    def load(self, chats: Iterable[Chat]) -> None:
        """Seed mention markers for loaded chats from the unread part of their message tails."""
        viewer_id = self.session.viewer_id
        for chat in chats:
            self.state.first_unread_mention.pop(chat.id, None)
            if chat.unread_count <= 0:
                continue
            for message in self.state.messages.get(chat.id, ()):
                if message.sender_id == viewer_id or viewer_id in message.read_by:
                    continue
                if self._is_mention(message):
                    self.state.first_unread_mention[chat.id] = message.id
                    break

    def on_insert(self, message: Message, viewer_id: int, chat_open_and_focused: bool) -> bool:
        """Count a newly inserted message; returns True when the counter moved."""
        if message.sender_id == viewer_id or chat_open_and_focused:
            return False
        chat = self.state.chats.get(message.chat_id)
        if chat is None:
            return False

        chat.unread_count += 1
        if message.chat_id not in self.state.first_unread_mention and self._is_mention(message):
            self.state.first_unread_mention[message.chat_id] = message.id
        return True

    def mark_read(self, chat_id: int) -> bool:
        chat = self.state.chats.get(chat_id)
        had_mention = self.state.first_unread_mention.pop(chat_id, None) is not None
        if chat is None:
            return had_mention
        changed = chat.unread_count > 0 or had_mention
        chat.unread_count = 0
        return changed

    def unread_count(self, chat_id: int) -> int:
        chat = self.state.chats.get(chat_id)
        return chat.unread_count if chat else 0

    def total_unread(self) -> int:
        return sum(chat.unread_count for chat in self.state.chats.values())

    def has_mention(self, chat_id: int) -> bool:
        return chat_id in self.state.first_unread_mention

    def first_unread_mention(self, chat_id: int) -> Optional[MessageId]:
        return self.state.first_unread_mention.get(chat_id)
