import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from chatsync.schemas.message import Message, MessageCreate, utcnow
from chatsync.session import Session

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def new_correlation_token() -> str:
    return uuid.uuid4().hex


@dataclass
class PendingWrite:
    temp_id: str
    draft: MessageCreate
    message: Message
    created_at: datetime = field(default_factory=utcnow)

    @property
    def chat_id(self) -> int:
        return self.draft.chat_id

    @property
    def correlation_token(self) -> Optional[str]:
        return self.draft.client_message_id


class OptimisticWriteTracker:
    """
    Pending sends shown before the store confirms them.

    A pending entry lives in the chat's message list under a temp id and is
    later either replaced in place by the confirmed record or removed.
    """

    def __init__(self, session: Session):
        self.session = session
        self._pending: Dict[str, PendingWrite] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, temp_id: str) -> Optional[PendingWrite]:
        return self._pending.get(temp_id)

    def pending_for(self, chat_id: int) -> List[PendingWrite]:
        return [pending for pending in self._pending.values() if pending.chat_id == chat_id]

    def begin_send(self, draft: MessageCreate) -> str:
        """Append a pending message at the tail of its chat and return its temp id."""
        if not draft.client_message_id:
            draft = draft.model_copy(update={"client_message_id": new_correlation_token()})

        temp_id = new_temp_id()
        viewer_id = self.session.viewer_id
        message = Message(
            id=temp_id,
            chat_id=draft.chat_id,
            sender_id=viewer_id,
            text=draft.text.strip() if draft.text else draft.text,
            attachment=draft.attachment,
            reply_to_id=draft.reply_to_id,
            timestamp=utcnow(),
            read_by={viewer_id},
            client_message_id=draft.client_message_id,
        )
        self.session.state.chat_messages(draft.chat_id).append(message)
        self._pending[temp_id] = PendingWrite(temp_id=temp_id, draft=draft, message=message)
        logger.debug("Pending send %s in chat %s", temp_id, draft.chat_id)
        return temp_id

    def confirm(self, temp_id: str, record: Message) -> bool:
        """Swap the pending entry for the confirmed record at the same position."""
        pending = self._pending.pop(temp_id, None)
        if pending is None:
            return False

        messages = self.session.state.messages.get(pending.chat_id)
        index = self._index_of(messages, temp_id)
        if index is None:
            return False

        if any(message.id == record.id for message in messages):
            # the confirmed record is already listed, the pending copy is redundant
            del messages[index]
        else:
            messages[index] = record.model_copy(deep=True)
        logger.debug("Confirmed %s as message %s", temp_id, record.id)
        return True

    def rollback(self, temp_id: str) -> bool:
        pending = self._pending.pop(temp_id, None)
        if pending is None:
            return False

        messages = self.session.state.messages.get(pending.chat_id)
        index = self._index_of(messages, temp_id)
        if index is not None:
            del messages[index]
        logger.debug("Rolled back %s", temp_id)
        return True

    def match_echo(self, record: Message) -> Optional[str]:
        """Temp id of the pending send that a remote insert satisfies, if any."""
        if record.sender_id != self.session.viewer_id:
            return None

        candidates = self.pending_for(record.chat_id)
        if record.client_message_id:
            for pending in candidates:
                if pending.correlation_token == record.client_message_id:
                    return pending.temp_id
            return None

        # the echo carries no token: fall back to content, oldest pending first
        signature = record.signature()
        for pending in sorted(candidates, key=lambda pending: pending.created_at):
            if pending.message.signature() == signature:
                return pending.temp_id
        return None

    def discard_chat(self, chat_id: int) -> int:
        temp_ids = [pending.temp_id for pending in self.pending_for(chat_id)]
        for temp_id in temp_ids:
            del self._pending[temp_id]
        return len(temp_ids)

    def clear(self) -> None:
        self._pending.clear()

    @staticmethod
    def _index_of(messages: Optional[List[Message]], temp_id: str) -> Optional[int]:
        for index, message in enumerate(messages or ()):
            if message.id == temp_id:
                return index
        return None
