"""
SyncEngine: the facade UI collaborators talk to.

It owns one Session and wires the synchronization components together:

    SubscriptionManager -> ReconciliationEngine -> UnreadAndMentionTracker
                                                -> NotificationDispatcher

Entry points never raise for expected failures. They return ``Ok``/``Err``
and every ``Err`` a user should see is also published on ``errors``.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from chatsync.config import Settings, settings as default_settings
from chatsync.notifications import NotificationDispatcher, Notifier
from chatsync.optimistic import OptimisticWriteTracker, new_correlation_token
from chatsync.reconciliation import ApplyOutcome, ReconciliationEngine, sort_messages
from chatsync.result import Err, ErrorChannel, ErrorKind, Ok, Result
from chatsync.schemas.chat import Chat, ChatType, UserProfile
from chatsync.schemas.events import ChatDeleted, MessageInserted, MessageUpdated, Resource
from chatsync.schemas.message import Attachment, Message, MessageCreate, MessagePatch
from chatsync.schemas.social import Notification, Relationship, RelationshipKind
from chatsync.schemas.sync import BulkLoad, WriteKind
from chatsync.session import MessageId, NotificationPermission, Session
from chatsync.store.base import MessageStoreService
from chatsync.subscriptions import SubscriptionManager
from chatsync.unread import UnreadAndMentionTracker

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        store: MessageStoreService,
        viewer: UserProfile,
        notifier: Optional[Notifier] = None,
        settings: Settings = default_settings,
    ):
        self.session = Session(viewer, store, settings)
        self.errors = ErrorChannel(settings.ERROR_HISTORY_SIZE)
        self.subscriptions = SubscriptionManager(self.session, self.errors)
        self.tracker = OptimisticWriteTracker(self.session)
        self.reconciler = ReconciliationEngine(self.session, self.tracker)
        self.unread = UnreadAndMentionTracker(self.session)
        self.dispatcher = NotificationDispatcher(self.session, notifier)
        self._session_ref: Optional[object] = None
        self._opened_for: Optional[object] = None

    @property
    def viewer_id(self) -> int:
        return self.session.viewer_id

    @property
    def store(self) -> MessageStoreService:
        return self.session.store

    @property
    def state(self):
        return self.session.state

    @property
    def is_running(self) -> bool:
        return self.session.active and self._session_ref is not None

    # Lifecycle

    async def start(self) -> Result:
        """Bulk load the viewer's state and open the session's push channels."""
        if self.is_running:
            return Ok(False)

        self.session.init()
        ref = self._session_ref = object()
        loaded = await self.store.bulk_load(self.viewer_id)
        if self._session_ref is not ref:
            return Err(ErrorKind.BULK_LOAD_FAILED, "session closed while loading")
        if not loaded.ok:
            # partial global state is worse than none
            await self.stop()
            return self._report(Err(ErrorKind.BULK_LOAD_FAILED, str(loaded)))

        self._apply_bulk(loaded.value)
        await self._open_session_channels(ref)
        logger.info(
            "Sync started for viewer %s: %s chats, %s channels",
            self.viewer_id, len(self.state.chats), len(self.subscriptions.open_keys),
        )
        return Ok(True)

    async def stop(self) -> None:
        await self.subscriptions.close_all()
        self._opened_for = None
        self._session_ref = None
        self.tracker.clear()
        self.session.teardown()

    def _apply_bulk(self, bulk: BulkLoad) -> None:
        state = self.state
        if bulk.viewer is not None:
            self.session.viewer = bulk.viewer
        state.users = {user.id: user for user in bulk.users}
        state.chats = {chat.id: chat for chat in bulk.chats}
        state.messages = {}
        for chat in bulk.chats:
            messages = list(bulk.messages.get(chat.id, []))
            sort_messages(messages)
            state.messages[chat.id] = messages
        state.relationships = {relationship.id: relationship for relationship in bulk.relationships}
        state.notifications = {notification.id: notification for notification in bulk.notifications}
        state.sort_chats()
        self.unread.load(bulk.chats)

    def _channel_specs(self) -> Dict[str, Tuple[Resource, Dict[str, Any]]]:
        chat_ids = sorted(self.state.chats)
        viewer_id = self.viewer_id
        return {
            "messages": (Resource.MESSAGES, {"chat_id": chat_ids}),
            "chats": (Resource.CHATS, {"id": chat_ids}),
            "participants": (Resource.PARTICIPANTS, {"user_id": viewer_id}),
            "relationships": (Resource.RELATIONSHIPS, {"from_user_id|to_user_id": viewer_id}),
            "notifications": (Resource.NOTIFICATIONS, {"user_id": viewer_id}),
        }

    async def _open_session_channels(self, ref: object) -> None:
        if self._opened_for is ref:
            return
        self._opened_for = ref
        await self.resubscribe()

    async def resubscribe(self) -> List[str]:
        """Open every session channel that is not open; returns the keys that were opened."""
        opened = []
        for key, (resource, filter) in self._channel_specs().items():
            result = await self.subscriptions.open(key, resource, filter, self._handle_event)
            if result.ok and result.value:
                opened.append(key)
        return opened

    async def _sync_channel_filters(self) -> None:
        """Reopen the open channels whose filter no longer matches the chat set."""
        for key, (resource, filter) in self._channel_specs().items():
            current = self.subscriptions.filter_of(key)
            if current is None or current == filter:
                continue
            await self.subscriptions.close(key)
            await self.subscriptions.open(key, resource, filter, self._handle_event)

    # Event routing

    async def _handle_event(self, event) -> None:
        if not self.session.active:
            return

        result = self.reconciler.apply(event)
        if not result.ok:
            return
        outcome = result.value

        if isinstance(event, MessageInserted) and outcome == ApplyOutcome.INSERTED:
            await self._on_new_message(event.record)
        elif outcome == ApplyOutcome.REFRESH_REQUIRED:
            await self.refresh_chats()
        elif isinstance(event, ChatDeleted) and outcome == ApplyOutcome.REMOVED:
            self._forget_open_chat()
            await self._sync_channel_filters()

    async def _on_new_message(self, message: Message) -> None:
        chat_id = message.chat_id
        focused = self.session.is_chat_active(chat_id)
        self.unread.on_insert(message, self.viewer_id, focused)
        await self.dispatcher.maybe_notify(message, self.viewer_id, focused, self.session.permission_granted)
        if focused and message.sender_id != self.viewer_id:
            await self._store_mark_read(chat_id)

    def _forget_open_chat(self) -> None:
        if self.session.open_chat_id is not None and self.session.open_chat_id not in self.state.chats:
            self.session.open_chat_id = None

    async def refresh_chats(self) -> Result:
        """Scoped chat list reload used when memberships change."""
        result = await self.store.load_chats(self.viewer_id)
        if not result.ok:
            return self._report(result)
        if not self.session.active:
            return Ok(False)

        fresh = {chat.id: chat for chat in result.value}
        joined = [chat_id for chat_id in fresh if chat_id not in self.state.chats]
        for chat_id in set(self.state.chats) - set(fresh):
            self.reconciler.remove_chat(chat_id)
        for chat in fresh.values():
            if self.session.is_chat_active(chat.id):
                chat.unread_count = 0
            self.state.chats[chat.id] = chat
            self.state.chat_messages(chat.id)
        self.state.sort_chats()
        self._forget_open_chat()
        await self._sync_channel_filters()
        await self._load_history(joined)
        return Ok(True)

    async def _load_history(self, chat_ids: List[int]) -> None:
        """Fill in the history tail of chats joined after the bulk load."""
        tails = await asyncio.gather(*(self.store.load_messages(self.viewer_id, chat_id) for chat_id in chat_ids))
        if not self.session.active:
            return
        for chat_id, tail in zip(chat_ids, tails):
            if not tail.ok:
                self._report(tail)
                continue
            # messages pushed since the resubscribe are already listed and come back as duplicates
            for message in tail.value:
                self.reconciler.apply(MessageInserted(record=message))

    # Snapshots

    def chats(self) -> List[Chat]:
        return [self.state.chats[chat_id].model_copy(deep=True) for chat_id in self.state.chat_order]

    def chat(self, chat_id: int) -> Optional[Chat]:
        chat = self.state.chats.get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    def messages(self, chat_id: int) -> List[Message]:
        return [message.model_copy(deep=True) for message in self.state.messages.get(chat_id, ())]

    def unread_count(self, chat_id: int) -> int:
        return self.unread.unread_count(chat_id)

    def has_mention(self, chat_id: int) -> bool:
        return self.unread.has_mention(chat_id)

    def first_unread_mention(self, chat_id: int) -> Optional[MessageId]:
        return self.unread.first_unread_mention(chat_id)

    def relationships(self) -> List[Relationship]:
        return [self.state.relationships[key].model_copy(deep=True) for key in sorted(self.state.relationships)]

    def blocked_user_ids(self) -> Set[int]:
        return {
            relationship.to_user_id
            for relationship in self.state.relationships.values()
            if relationship.kind == RelationshipKind.BLOCK and relationship.from_user_id == self.viewer_id
        }

    def notifications(self) -> List[Notification]:
        ordered = sorted(
            self.state.notifications.values(),
            key=lambda notification: (notification.created_at, notification.id),
            reverse=True,
        )
        return [notification.model_copy(deep=True) for notification in ordered]

    def users(self) -> List[UserProfile]:
        return [self.state.users[key].model_copy() for key in sorted(self.state.users)]

    # Focus and permission

    async def open_chat(self, chat_id: int) -> Result:
        if chat_id not in self.state.chats:
            return self._report(Err(ErrorKind.NOT_FOUND, f"chat {chat_id} is not loaded"))
        self.session.open_chat_id = chat_id
        if self.session.window_focused:
            return await self.mark_read(chat_id)
        return Ok(False)

    def close_chat(self) -> None:
        self.session.open_chat_id = None

    async def set_window_focus(self, focused: bool) -> None:
        self.session.window_focused = focused
        open_chat_id = self.session.open_chat_id
        if focused and open_chat_id is not None:
            await self.mark_read(open_chat_id)

    def set_notification_permission(self, permission) -> None:
        self.session.notification_permission = NotificationPermission(permission)

    # Entry points

    def _report(self, error: Err) -> Err:
        return self.errors.report(error)

    def _find(self, message_id: MessageId, chat_id: Optional[int] = None) -> Optional[Message]:
        found_chat, index = self.state.find_message(message_id, chat_id)
        if found_chat is None:
            return None
        return self.state.messages[found_chat][index]

    def _confirmed(self, message_id: MessageId, chat_id: Optional[int] = None):
        """The cached, store-confirmed message, or the Err explaining why it cannot be used."""
        message = self._find(message_id, chat_id)
        if message is None:
            return None, self._report(Err(ErrorKind.NOT_FOUND, f"message {message_id} is not loaded"))
        if message.is_pending:
            return None, self._report(Err(ErrorKind.INVALID, "message is not confirmed yet"))
        return message, None

    def _merge_record(self, record: Message, *fields: str) -> None:
        patch = MessagePatch(**{field: getattr(record, field) for field in ("id", "chat_id") + fields})
        self.reconciler.apply(MessageUpdated(record=patch))

    async def send(
        self,
        chat_id: int,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        reply_to_id: Optional[int] = None,
    ) -> Result:
        """Optimistically append a message, then confirm it in place or roll it back."""
        chat = self.state.chats.get(chat_id)
        if chat is None:
            return self._report(Err(ErrorKind.NOT_FOUND, f"chat {chat_id} is not loaded"))
        if not (text or "").strip() and attachment is None:
            return self._report(Err(ErrorKind.INVALID, "message has neither text nor attachment"))

        draft = MessageCreate(
            chat_id=chat_id,
            text=text.strip() if text else text,
            attachment=attachment,
            reply_to_id=reply_to_id,
            client_message_id=new_correlation_token(),
        )
        previous_preview = (chat.last_message_content, chat.last_message_timestamp)
        temp_id = self.tracker.begin_send(draft)
        pending = self.tracker.get(temp_id).message
        self.reconciler.update_preview(pending)

        payload = draft.model_dump(mode="json")
        payload["sender_id"] = self.viewer_id
        result = await self.store.write(WriteKind.SEND, payload)
        if not result.ok:
            rolled_back = self.tracker.rollback(temp_id)
            still_previewed = self.state.chats.get(chat_id) is chat and chat.last_message_timestamp == pending.timestamp
            if rolled_back and still_previewed:
                chat.last_message_content, chat.last_message_timestamp = previous_preview
                self.state.sort_chats()
            return self._report(result)

        record = result.value
        if self.tracker.confirm(temp_id, record):
            self.reconciler.update_preview(record)
        return Ok(record)

    async def edit(self, message_id: int, text: str, chat_id: Optional[int] = None) -> Result:
        message, error = self._confirmed(message_id, chat_id)
        if error:
            return error
        if message.sender_id != self.viewer_id:
            return self._report(Err(ErrorKind.NOT_ALLOWED, "only the author can edit a message"))
        if not (text or "").strip():
            return self._report(Err(ErrorKind.INVALID, "edited text is empty"))

        result = await self.store.write(WriteKind.EDIT, {
            "user_id": self.viewer_id, "message_id": message.id, "text": text.strip(),
        })
        if not result.ok:
            return self._report(result)
        self._merge_record(result.value, "text", "is_edited")
        return result

    async def delete(self, message_id: int, chat_id: Optional[int] = None) -> Result:
        """Delete for everyone: the marker is shown at once and reverted if the store refuses."""
        message, error = self._confirmed(message_id, chat_id)
        if error:
            return error

        original = self.reconciler.rewrite_deleted(message.chat_id, message.id)
        result = await self.store.write(WriteKind.DELETE, {"user_id": self.viewer_id, "message_id": message.id})
        if not result.ok:
            self.reconciler.restore(original)
            return self._report(result)
        return result

    async def react(self, message_id: int, emoji: str, chat_id: Optional[int] = None) -> Result:
        message, error = self._confirmed(message_id, chat_id)
        if error:
            return error

        result = await self.store.write(WriteKind.REACT, {
            "user_id": self.viewer_id, "message_id": message.id, "emoji": emoji,
        })
        if not result.ok:
            return self._report(result)
        self._merge_record(result.value, "reactions")
        return result

    async def pin(self, message_id: int, chat_id: Optional[int] = None) -> Result:
        message, error = self._confirmed(message_id, chat_id)
        if error:
            return error
        chat = self.state.chats[message.chat_id]
        if chat.chat_type != ChatType.DIRECT and not chat.is_admin(self.viewer_id):
            return self._report(Err(ErrorKind.NOT_ALLOWED, "only admins can pin messages in a group"))

        result = await self.store.write(WriteKind.PIN, {"user_id": self.viewer_id, "message_id": message.id})
        if not result.ok:
            return self._report(result)
        record = result.value
        self._merge_record(record, "is_pinned")
        if record.is_pinned:
            settings = self.session.settings
            await self.send(
                record.chat_id,
                f"{settings.SYSTEM_MESSAGE_PREFIX}📌 {self.session.viewer.name} pinned a message."
                f"{settings.SYSTEM_MESSAGE_SUFFIX}",
            )
        return result

    async def star(self, message_id: int, chat_id: Optional[int] = None) -> Result:
        message, error = self._confirmed(message_id, chat_id)
        if error:
            return error

        result = await self.store.write(WriteKind.STAR, {"user_id": self.viewer_id, "message_id": message.id})
        if not result.ok:
            return self._report(result)
        self._merge_record(result.value, "is_starred")
        return result

    async def mark_read(self, chat_id: int) -> Result:
        """Reset the chat's counter locally, then tell the store."""
        changed = self.unread.mark_read(chat_id)
        await self._store_mark_read(chat_id)
        return Ok(changed)

    async def _store_mark_read(self, chat_id: int) -> None:
        result = await self.store.write(WriteKind.MARK_READ, {"user_id": self.viewer_id, "chat_id": chat_id})
        if not result.ok:
            logger.warning("Failed to mark chat %s as read: %s", chat_id, result)

    async def forward(self, message_id: MessageId, chat_ids: Iterable[int]) -> Result:
        """Copy a message into other chats; returns the confirmed copies."""
        message = self._find(message_id)
        if message is None:
            return self._report(Err(ErrorKind.NOT_FOUND, f"message {message_id} is not loaded"))

        sender = self.state.users.get(message.sender_id)
        sender_name = sender.name if sender else "Unknown User"
        text = f"Forwarded from **{sender_name}**\n{message.text or ''}"
        attachment = message.attachment.model_dump(mode="json") if message.attachment else None

        targets = list(dict.fromkeys(chat_ids))
        results = await asyncio.gather(*(
            self.store.write(WriteKind.SEND, {
                "sender_id": self.viewer_id,
                "chat_id": chat_id,
                "text": text,
                "attachment": attachment,
                "client_message_id": new_correlation_token(),
            })
            for chat_id in targets
        ))

        records = []
        failed = []
        for chat_id, result in zip(targets, results):
            if result.ok:
                records.append(result.value)
                self.reconciler.apply(MessageInserted(record=result.value))
            else:
                failed.append(chat_id)
        if failed:
            return self._report(Err(ErrorKind.WRITE_FAILED, f"could not forward to chats {failed}"))
        return Ok(records)

    async def leave_chat(self, chat_id: int) -> Result:
        if chat_id not in self.state.chats:
            return self._report(Err(ErrorKind.NOT_FOUND, f"chat {chat_id} is not loaded"))

        result = await self.store.write(WriteKind.LEAVE_CHAT, {"user_id": self.viewer_id, "chat_id": chat_id})
        if not result.ok:
            return self._report(result)
        if chat_id in self.state.chats:
            self.reconciler.remove_chat(chat_id)
        self._forget_open_chat()
        await self._sync_channel_filters()
        return result

    async def purge(self, chat_id: int, message_id: MessageId) -> Result:
        """Hard removal of a message from the local view; admins only."""
        chat = self.state.chats.get(chat_id)
        if chat is None:
            return self._report(Err(ErrorKind.NOT_FOUND, f"chat {chat_id} is not loaded"))
        if not chat.is_admin(self.viewer_id):
            return self._report(Err(ErrorKind.NOT_ALLOWED, "only admins can purge messages"))

        result = self.reconciler.purge(chat_id, message_id)
        if not result.ok:
            return self._report(result)
        return result
