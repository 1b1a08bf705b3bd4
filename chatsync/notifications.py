import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from chatsync.schemas.message import Message
from chatsync.session import Session

logger = logging.getLogger(__name__)


@dataclass
class Alert:
    title: str
    body: str
    icon: str
    tag: str
    chat_id: int
    message_id: Optional[Union[int, str]] = None


Notifier = Callable[[Alert], Union[Awaitable[None], None]]


def log_notifier(alert: Alert) -> None:
    logger.info("Notification [%s] %s: %s", alert.tag, alert.title, alert.body)


class NotificationDispatcher:
    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or log_notifier

    def unwrap_system_message(self, text: str) -> Optional[str]:
        settings = self.session.settings
        if text.startswith(settings.SYSTEM_MESSAGE_PREFIX) and text.endswith(settings.SYSTEM_MESSAGE_SUFFIX):
            return text[len(settings.SYSTEM_MESSAGE_PREFIX):-len(settings.SYSTEM_MESSAGE_SUFFIX)].strip()
        return None

    def alert_body(self, message: Message) -> Optional[str]:
        if message.text == self.session.settings.DELETED_MESSAGE_MARKER:
            return None
        if message.text:
            return self.unwrap_system_message(message.text) or message.text
        if message.attachment and message.attachment.name:
            return f"Sent: {message.attachment.name}"
        return "Sent an attachment"

    def build_alert(self, message: Message) -> Optional[Alert]:
        """Alert for ``message``, or None when the sender is not cached yet."""
        chat = self.session.state.chats.get(message.chat_id)
        sender = chat.participant(message.sender_id) if chat else None
        if sender is None or not sender.name:
            logger.debug("Sender %s of message %s not cached; no alert", message.sender_id, message.id)
            return None

        body = self.alert_body(message)
        if body is None:
            return None
        return Alert(
            title=sender.name,
            body=body,
            icon=sender.avatar_url or self.session.settings.DEFAULT_NOTIFICATION_ICON,
            tag=f"chat-{message.chat_id}",
            chat_id=message.chat_id,
            message_id=message.id,
        )

    async def maybe_notify(
        self,
        message: Message,
        viewer_id: int,
        chat_open_and_focused: bool,
        permission_granted: bool,
    ) -> Optional[Alert]:
        if message.sender_id == viewer_id or not permission_granted or chat_open_and_focused:
            return None

        alert = self.build_alert(message)
        if alert is None:
            return None

        try:
            result = self.notifier(alert)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Failed to display notification for chat %s", message.chat_id)
        return alert
