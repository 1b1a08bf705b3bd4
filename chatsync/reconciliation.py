"""
Merging of remote change events into the session's collections.

Every operation here is safe to repeat: replaying an ordered sequence of
events yields the same collections as applying it once, and an event that
references something the session does not hold is discarded rather than
raised.
"""

import logging
from enum import Enum
from typing import Optional

from chatsync.optimistic import OptimisticWriteTracker
from chatsync.result import Err, ErrorKind, Ok, Result
from chatsync.schemas.chat import Chat
from chatsync.schemas.events import (
    ChangeKind,
    ChatDeleted,
    ChatInserted,
    ChatUpdated,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    NotificationChanged,
    ParticipantChanged,
    RelationshipChanged,
)
from chatsync.schemas.message import Message
from chatsync.session import MessageId, Session

logger = logging.getLogger(__name__)

# patch fields that may legitimately be cleared with an explicit null
NULLABLE_MESSAGE_FIELDS = {"text", "attachment", "reply_to_id", "client_message_id"}
NULLABLE_CHAT_FIELDS = {"name", "avatar_url", "description", "last_message_content", "last_message_timestamp"}
PREVIEW_FIELDS = {"last_message_content", "last_message_timestamp"}


class ApplyOutcome(str, Enum):
    INSERTED = "inserted"
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    MERGED = "merged"
    DELETED = "deleted"
    REMOVED = "removed"
    REFRESH_REQUIRED = "refresh_required"
    DISCARDED = "discarded"


def _anomaly(message: str) -> Err:
    logger.debug("Discarding event: %s", message)
    return Err(ErrorKind.RECONCILIATION_ANOMALY, message)


def _is_newer(candidate, current) -> bool:
    return candidate is not None and (current is None or candidate > current)


def sort_messages(messages) -> None:
    """Timestamp ascending; list.sort is stable so equal timestamps keep arrival order."""
    messages.sort(key=lambda message: message.timestamp)


class ReconciliationEngine:
    def __init__(self, session: Session, tracker: OptimisticWriteTracker):
        self.session = session
        self.tracker = tracker
        self._handlers = {
            MessageInserted: self._message_inserted,
            MessageUpdated: self._message_updated,
            MessageDeleted: self._message_deleted,
            ChatInserted: self._chat_inserted,
            ChatUpdated: self._chat_updated,
            ChatDeleted: self._chat_deleted,
            ParticipantChanged: self._participant_changed,
            RelationshipChanged: self._relationship_changed,
            NotificationChanged: self._notification_changed,
        }

    @property
    def state(self):
        return self.session.state

    def apply(self, event) -> Result:
        handler = self._handlers.get(type(event))
        if handler is None:
            return _anomaly(f"unsupported event {type(event).__name__}")
        return handler(event)

    # Messages

    def _message_inserted(self, event: MessageInserted) -> Result:
        record = event.record
        chat = self.state.chats.get(record.chat_id)
        if chat is None:
            return _anomaly(f"insert of message {record.id} for unknown chat {record.chat_id}")

        temp_id = self.tracker.match_echo(record)
        if temp_id is not None and self.tracker.confirm(temp_id, record):
            self.update_preview(record)
            return Ok(ApplyOutcome.CONFIRMED)

        messages = self.state.chat_messages(record.chat_id)
        for existing in messages:
            if existing.id == record.id:
                # read receipts only grow
                existing.read_by = existing.read_by | record.read_by
                return Ok(ApplyOutcome.DUPLICATE)

        messages.append(record.model_copy(deep=True))
        if len(messages) > 1 and messages[-2].timestamp > record.timestamp:
            sort_messages(messages)
        self.update_preview(record)
        return Ok(ApplyOutcome.INSERTED)

    def _locate(self, message_id: MessageId, chat_id: Optional[int]):
        found_chat, index = self.state.find_message(message_id, chat_id)
        if found_chat is None and chat_id is not None:
            found_chat, index = self.state.find_message(message_id)
        return found_chat, index

    def _message_updated(self, event: MessageUpdated) -> Result:
        patch = event.record.model_copy(deep=True)
        chat_id, index = self._locate(patch.id, patch.chat_id)
        if chat_id is None:
            return _anomaly(f"update of unknown message {patch.id}")

        messages = self.state.messages[chat_id]
        message = messages[index]
        previous_timestamp = message.timestamp
        for field in patch.model_fields_set - {"id", "chat_id"}:
            value = getattr(patch, field)
            if value is None and field not in NULLABLE_MESSAGE_FIELDS:
                continue
            setattr(message, field, value)

        if message.text == self.session.settings.DELETED_MESSAGE_MARKER:
            self._clear_deleted(message)
        if message.timestamp != previous_timestamp:
            sort_messages(messages)
        if messages[-1] is message:
            self.update_preview(message, force=True)
        return Ok(ApplyOutcome.MERGED)

    def _message_deleted(self, event: MessageDeleted) -> Result:
        ref = event.record
        chat_id, index = self._locate(ref.id, ref.chat_id)
        if chat_id is None:
            return _anomaly(f"delete of unknown message {ref.id}")

        messages = self.state.messages[chat_id]
        message = messages[index]
        message.text = self.session.settings.DELETED_MESSAGE_MARKER
        self._clear_deleted(message)
        if messages[-1] is message:
            self.update_preview(message, force=True)
        return Ok(ApplyOutcome.DELETED)

    @staticmethod
    def _clear_deleted(message: Message) -> None:
        message.attachment = None
        message.reactions = {}

    def rewrite_deleted(self, chat_id: int, message_id: MessageId) -> Optional[Message]:
        """Apply the deletion marker locally; returns a copy of the message as it was."""
        found_chat, index = self.state.find_message(message_id, chat_id)
        if found_chat is None:
            return None
        message = self.state.messages[found_chat][index]
        original = message.model_copy(deep=True)
        message.text = self.session.settings.DELETED_MESSAGE_MARKER
        self._clear_deleted(message)
        return original

    def restore(self, original: Message) -> bool:
        """Put back a message previously returned by ``rewrite_deleted``."""
        chat_id, index = self.state.find_message(original.id, original.chat_id)
        if chat_id is None:
            return False
        self.state.messages[chat_id][index] = original
        return True

    def purge(self, chat_id: int, message_id: MessageId) -> Result:
        """Remove a message outright instead of marking it deleted."""
        found_chat, index = self.state.find_message(message_id, chat_id)
        if found_chat is None:
            return Err(ErrorKind.NOT_FOUND, f"message {message_id} not in chat {chat_id}")
        if isinstance(message_id, str) and self.tracker.rollback(message_id):
            return Ok(ApplyOutcome.REMOVED)
        del self.state.messages[found_chat][index]
        return Ok(ApplyOutcome.REMOVED)

    def update_preview(self, message: Message, force: bool = False) -> bool:
        """Move the chat's last-message preview to ``message`` when it is the newest one."""
        chat = self.state.chats.get(message.chat_id)
        if chat is None:
            return False
        current = chat.last_message_timestamp
        if not force and current is not None and message.timestamp < current:
            return False
        chat.last_message_content = message.preview()
        chat.last_message_timestamp = message.timestamp
        self.state.sort_chats()
        return True

    # Chats

    def _chat_inserted(self, event: ChatInserted) -> Result:
        record = event.record
        existing = self.state.chats.get(record.id)
        if existing is not None:
            fields = record.model_fields_set - {"participants", "unread_count"} - PREVIEW_FIELDS
            self._merge_chat(existing, record, fields)
            if _is_newer(record.last_message_timestamp, existing.last_message_timestamp):
                existing.last_message_content = record.last_message_content
                existing.last_message_timestamp = record.last_message_timestamp
            self.state.sort_chats()
            return Ok(ApplyOutcome.DUPLICATE)

        self.state.chats[record.id] = record.model_copy(deep=True)
        self.state.chat_messages(record.id)
        self.state.sort_chats()
        return Ok(ApplyOutcome.INSERTED)

    def _chat_updated(self, event: ChatUpdated) -> Result:
        patch = event.record.model_copy(deep=True)
        chat = self.state.chats.get(patch.id)
        if chat is None:
            return _anomaly(f"update of unknown chat {patch.id}")
        self._merge_chat(chat, patch, patch.model_fields_set)
        self.state.sort_chats()
        return Ok(ApplyOutcome.MERGED)

    @staticmethod
    def _merge_chat(chat: Chat, source, fields) -> None:
        for field in fields - {"id"}:
            value = getattr(source, field)
            if value is None and field not in NULLABLE_CHAT_FIELDS:
                continue
            setattr(chat, field, value)

    def _chat_deleted(self, event: ChatDeleted) -> Result:
        chat_id = event.record.id
        if chat_id not in self.state.chats:
            return _anomaly(f"delete of unknown chat {chat_id}")
        self.remove_chat(chat_id)
        return Ok(ApplyOutcome.REMOVED)

    def remove_chat(self, chat_id: int) -> None:
        discarded = self.tracker.discard_chat(chat_id)
        self.state.remove_chat(chat_id)
        logger.debug("Removed chat %s (%s pending writes discarded)", chat_id, discarded)

    def _participant_changed(self, event: ParticipantChanged) -> Result:
        participant = event.record
        if (
            event.kind == ChangeKind.DELETE
            and participant.user_id == self.session.viewer_id
            and participant.chat_id in self.state.chats
        ):
            self.remove_chat(participant.chat_id)
        return Ok(ApplyOutcome.REFRESH_REQUIRED)

    # Relationships and notifications

    def _relationship_changed(self, event: RelationshipChanged) -> Result:
        return self._apply_keyed(self.state.relationships, event.kind, event.record)

    def _notification_changed(self, event: NotificationChanged) -> Result:
        return self._apply_keyed(self.state.notifications, event.kind, event.record)

    @staticmethod
    def _apply_keyed(collection, kind: ChangeKind, record) -> Result:
        if kind == ChangeKind.DELETE:
            if collection.pop(record.id, None) is None:
                return Ok(ApplyOutcome.DISCARDED)
            return Ok(ApplyOutcome.REMOVED)
        existed = record.id in collection
        collection[record.id] = record.model_copy(deep=True)
        return Ok(ApplyOutcome.MERGED if existed else ApplyOutcome.INSERTED)
