"""
SQLAlchemy-backed Message Store Service.

Writes go through the repositories and every committed change is published
on an in-process ``ChangeFeed``, which plays the role of the push channel for
in-process clients and for the websocket fan-out of the store server.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from chatsync.config import Settings, settings as default_settings
from chatsync.database import build_engine, build_session_factory, create_tables
from chatsync.models.chat import Chat as ChatRow
from chatsync.models.chat_member import ChatMember
from chatsync.models.message import Message as MessageRow
from chatsync.models.user import User
from chatsync.repositories.chat_repository import ChatRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.social_repository import SocialRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.result import Err, ErrorKind, Ok, Result
from chatsync.schemas.chat import Chat, ChatType, Participant, UserProfile
from chatsync.schemas.events import ChangeKind, Resource
from chatsync.schemas.message import Attachment, Message, MessageCreate
from chatsync.schemas.social import Notification, Relationship, RelationshipKind, RelationshipStatus
from chatsync.schemas.sync import BulkLoad, WriteKind
from chatsync.store.base import (
    ErrorCallback,
    EventCallback,
    MessageStoreService,
    RawEvent,
    StoreSubscription,
    matches_filter,
)

logger = logging.getLogger(__name__)


def user_to_schema(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


def participant_to_schema(member: ChatMember) -> Participant:
    return Participant(
        chat_id=member.chat_id,
        user_id=member.user_id,
        is_admin=member.is_admin,
        username=member.user.username if member.user else None,
        display_name=member.user.display_name if member.user else None,
        avatar_url=member.user.avatar_url if member.user else None,
    )


def message_to_schema(row: MessageRow) -> Message:
    read_by = {row.sender_id}
    read_by.update(receipt.user_id for receipt in row.read_receipts)
    return Message(
        id=row.id,
        chat_id=row.chat_id,
        sender_id=row.sender_id,
        text=row.text,
        attachment=Attachment(**row.attachment) if row.attachment else None,
        reply_to_id=row.reply_to_id,
        timestamp=row.timestamp,
        is_edited=row.is_edited,
        is_pinned=row.is_pinned,
        is_starred=row.is_starred,
        reactions={emoji: set(users) for emoji, users in (row.reactions or {}).items()},
        read_by=read_by,
        client_message_id=row.client_message_id,
    )


def chat_to_schema(row: ChatRow, last_message: Optional[MessageRow] = None, unread_count: int = 0) -> Chat:
    preview = message_to_schema(last_message) if last_message is not None else None
    return Chat(
        id=row.id,
        chat_type=row.chat_type,
        name=row.name,
        avatar_url=row.avatar_url,
        description=row.description,
        creator_id=row.creator_id,
        created_at=row.created_at,
        participants=[participant_to_schema(member) for member in row.members],
        last_message_content=preview.preview() if preview else None,
        last_message_timestamp=preview.timestamp if preview else None,
        unread_count=unread_count,
    )


class LocalSubscription(StoreSubscription):
    def __init__(self, feed: "ChangeFeed", subscriber_id: int):
        self._feed = feed
        self._subscriber_id = subscriber_id

    async def close(self) -> None:
        self._feed.remove(self._subscriber_id)


class _Subscriber:
    def __init__(self, resource: Resource, filter: Optional[Dict[str, Any]], on_event: EventCallback,
                 on_error: Optional[ErrorCallback]):
        self.resource = Resource(resource)
        self.filter = dict(filter or {})
        self.on_event = on_event
        self.on_error = on_error


class ChangeFeed:
    """In-process fan-out of committed changes to push channel subscribers."""

    def __init__(self):
        self._subscribers: Dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        self._held: Optional[List[RawEvent]] = None

    def add(self, resource: Resource, filter: Optional[Dict[str, Any]], on_event: EventCallback,
            on_error: Optional[ErrorCallback] = None) -> LocalSubscription:
        subscriber_id = next(self._ids)
        self._subscribers[subscriber_id] = _Subscriber(resource, filter, on_event, on_error)
        return LocalSubscription(self, subscriber_id)

    def remove(self, subscriber_id: int) -> None:
        self._subscribers.pop(subscriber_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def hold(self) -> None:
        """Queue published events instead of delivering them."""
        if self._held is None:
            self._held = []

    async def release(self) -> int:
        """Deliver every queued event in publish order; returns how many were queued."""
        held, self._held = self._held or [], None
        for raw in held:
            await self._deliver(raw)
        return len(held)

    async def publish(self, resource: Resource, kind: ChangeKind, record: Dict[str, Any]) -> None:
        raw = {"resource": Resource(resource).value, "kind": ChangeKind(kind).value, "record": record}
        if self._held is not None:
            self._held.append(raw)
            return
        await self._deliver(raw)

    async def fail(self, error: Exception) -> None:
        """Report a transport failure to every subscriber and drop them."""
        subscribers, self._subscribers = list(self._subscribers.values()), {}
        for subscriber in subscribers:
            if subscriber.on_error is None:
                continue
            try:
                result = subscriber.on_error(error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber error callback failed")

    async def _deliver(self, raw: RawEvent) -> None:
        for subscriber in list(self._subscribers.values()):
            if subscriber.resource.value != raw["resource"]:
                continue
            if not matches_filter(raw["record"], subscriber.filter):
                continue
            try:
                result = subscriber.on_event(raw)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber failed to handle %s %s", raw["resource"], raw["kind"])


class LocalMessageStore(MessageStoreService):
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings = default_settings,
        feed: Optional[ChangeFeed] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self.settings = settings
        self.feed = feed or ChangeFeed()
        self._engine = engine
        self._writers = {
            WriteKind.SEND: self._send,
            WriteKind.EDIT: self._edit,
            WriteKind.DELETE: self._delete,
            WriteKind.REACT: self._react,
            WriteKind.PIN: self._pin,
            WriteKind.STAR: self._star,
            WriteKind.MARK_READ: self._mark_read,
            WriteKind.LEAVE_CHAT: self._leave_chat,
        }

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, settings: Settings = default_settings) -> "LocalMessageStore":
        engine = build_engine(database_url or settings.DATABASE_URL)
        return cls(build_session_factory(engine), settings=settings, engine=engine)

    async def create_tables(self) -> None:
        if self._engine is None:
            raise RuntimeError("store was built without an engine")
        await create_tables(self._engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # Loading

    async def bulk_load(self, viewer_id: int) -> Result:
        try:
            viewer, chats, relationships, notifications, users = await asyncio.gather(
                self._load_viewer(viewer_id),
                self._load_chats(viewer_id),
                self._load_relationships(viewer_id),
                self._load_notifications(viewer_id),
                self._load_users(),
            )
            if viewer is None:
                return Err(ErrorKind.NOT_FOUND, f"unknown viewer {viewer_id}")
            tails = await asyncio.gather(*(self._load_tail(chat.id) for chat in chats))
        except SQLAlchemyError as exc:
            logger.exception("Bulk load failed for viewer %s", viewer_id)
            return Err(ErrorKind.BULK_LOAD_FAILED, str(exc))

        return Ok(BulkLoad(
            viewer=viewer,
            chats=chats,
            messages={chat.id: tail for chat, tail in zip(chats, tails)},
            relationships=relationships,
            notifications=notifications,
            users=users,
        ))

    async def load_chats(self, viewer_id: int) -> Result:
        try:
            return Ok(await self._load_chats(viewer_id))
        except SQLAlchemyError as exc:
            logger.exception("Chat list load failed for viewer %s", viewer_id)
            return Err(ErrorKind.BULK_LOAD_FAILED, str(exc))

    async def load_messages(self, viewer_id: int, chat_id: int) -> Result:
        try:
            async with self._session_factory() as db:
                if not await ChatRepository(db).is_member(chat_id, viewer_id):
                    return Err(ErrorKind.NOT_ALLOWED, "No access to this chat")
            return Ok(await self._load_tail(chat_id))
        except SQLAlchemyError as exc:
            logger.exception("History load failed for chat %s", chat_id)
            return Err(ErrorKind.BULK_LOAD_FAILED, str(exc))

    async def _load_viewer(self, viewer_id: int) -> Optional[UserProfile]:
        async with self._session_factory() as db:
            user = await UserRepository(db).get_by_id(viewer_id)
            return user_to_schema(user) if user else None

    async def _load_users(self) -> List[UserProfile]:
        async with self._session_factory() as db:
            return [user_to_schema(user) for user in await UserRepository(db).get_all()]

    async def _load_chats(self, viewer_id: int) -> List[Chat]:
        async with self._session_factory() as db:
            chat_repo = ChatRepository(db)
            message_repo = MessageRepository(db)
            chats = []
            for row in await chat_repo.get_user_chats(viewer_id):
                last_message = await message_repo.get_last_message(row.id)
                unread_count = await message_repo.count_unread(row.id, viewer_id)
                chats.append(chat_to_schema(row, last_message, unread_count))
            return chats

    async def _load_tail(self, chat_id: int) -> List[Message]:
        async with self._session_factory() as db:
            rows = await MessageRepository(db).get_chat_tail(chat_id, self.settings.MESSAGE_TAIL_LIMIT)
            return [message_to_schema(row) for row in rows]

    async def _load_relationships(self, viewer_id: int) -> List[Relationship]:
        async with self._session_factory() as db:
            rows = await SocialRepository(db).get_user_relationships(viewer_id)
            return [Relationship.model_validate(row, from_attributes=True) for row in rows]

    async def _load_notifications(self, viewer_id: int) -> List[Notification]:
        async with self._session_factory() as db:
            rows = await SocialRepository(db).get_user_notifications(viewer_id)
            return [Notification.model_validate(row, from_attributes=True) for row in rows]

    # Writes

    async def write(self, kind: WriteKind, payload: Dict[str, Any]) -> Result:
        try:
            writer = self._writers[WriteKind(kind)]
        except (KeyError, ValueError):
            return Err(ErrorKind.INVALID, f"unsupported write kind {kind!r}")

        try:
            return await writer(payload)
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            return Err(ErrorKind.INVALID, f"bad {WriteKind(kind).value} payload: {exc}")
        except SQLAlchemyError as exc:
            logger.exception("Store write %s failed", kind)
            return Err(ErrorKind.WRITE_FAILED, str(exc))

    async def _send(self, payload: Dict[str, Any]) -> Result:
        sender_id = int(payload["sender_id"])
        message_data = MessageCreate.model_validate(payload)
        if not (message_data.text or "").strip() and message_data.attachment is None:
            return Err(ErrorKind.INVALID, "message has neither text nor attachment")

        async with self._session_factory() as db:
            if not await ChatRepository(db).is_member(message_data.chat_id, sender_id):
                return Err(ErrorKind.NOT_ALLOWED, "No access to this chat")
            row = await MessageRepository(db).create(message_data, sender_id)
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.INSERT, message.model_dump(mode="json"))
        return Ok(message)

    async def _load_own_message(self, db, payload: Dict[str, Any], allow_admin: bool = False):
        message_id = int(payload["message_id"])
        user_id = int(payload["user_id"])
        row = await MessageRepository(db).get_by_id(message_id)
        if row is None:
            return None, Err(ErrorKind.NOT_FOUND, f"message {message_id} not found")
        if row.sender_id == user_id:
            return row, None
        if allow_admin:
            member = await ChatRepository(db).get_member(row.chat_id, user_id)
            if member and member.is_admin:
                return row, None
        return None, Err(ErrorKind.NOT_ALLOWED, "only the author can change this message")

    async def _load_member_message(self, db, payload: Dict[str, Any]):
        message_id = int(payload["message_id"])
        user_id = int(payload["user_id"])
        row = await MessageRepository(db).get_by_id(message_id)
        if row is None:
            return None, None, Err(ErrorKind.NOT_FOUND, f"message {message_id} not found")
        member = await ChatRepository(db).get_member(row.chat_id, user_id)
        if member is None:
            return None, None, Err(ErrorKind.NOT_ALLOWED, "No access to this chat")
        return row, member, None

    async def _edit(self, payload: Dict[str, Any]) -> Result:
        text = payload["text"]
        async with self._session_factory() as db:
            row, error = await self._load_own_message(db, payload)
            if error:
                return error
            if row.text == self.settings.DELETED_MESSAGE_MARKER:
                return Err(ErrorKind.INVALID, "deleted messages cannot be edited")
            row = await MessageRepository(db).update(row.id, {"text": text, "is_edited": True})
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.UPDATE, {
            "id": message.id, "chat_id": message.chat_id, "text": message.text, "is_edited": True,
        })
        return Ok(message)

    async def _delete(self, payload: Dict[str, Any]) -> Result:
        async with self._session_factory() as db:
            row, error = await self._load_own_message(db, payload, allow_admin=True)
            if error:
                return error
            row = await MessageRepository(db).soft_delete(row.id, self.settings.DELETED_MESSAGE_MARKER)
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.DELETE, {"id": message.id, "chat_id": message.chat_id})
        return Ok(message)

    async def _react(self, payload: Dict[str, Any]) -> Result:
        emoji = payload["emoji"]
        async with self._session_factory() as db:
            row, member, error = await self._load_member_message(db, payload)
            if error:
                return error
            row = await MessageRepository(db).toggle_reaction(row.id, member.user_id, emoji)
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.UPDATE, {
            "id": message.id,
            "chat_id": message.chat_id,
            "reactions": {key: sorted(users) for key, users in message.reactions.items()},
        })
        return Ok(message)

    async def _pin(self, payload: Dict[str, Any]) -> Result:
        async with self._session_factory() as db:
            row, member, error = await self._load_member_message(db, payload)
            if error:
                return error
            chat = await ChatRepository(db).get_by_id(row.chat_id)
            if chat.chat_type != ChatType.DIRECT and not member.is_admin:
                return Err(ErrorKind.NOT_ALLOWED, "only admins can pin messages in a group")
            row = await MessageRepository(db).update(row.id, {"is_pinned": not row.is_pinned})
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.UPDATE, {
            "id": message.id, "chat_id": message.chat_id, "is_pinned": message.is_pinned,
        })
        return Ok(message)

    async def _star(self, payload: Dict[str, Any]) -> Result:
        async with self._session_factory() as db:
            row, _member, error = await self._load_member_message(db, payload)
            if error:
                return error
            row = await MessageRepository(db).update(row.id, {"is_starred": not row.is_starred})
            message = message_to_schema(row)

        await self.feed.publish(Resource.MESSAGES, ChangeKind.UPDATE, {
            "id": message.id, "chat_id": message.chat_id, "is_starred": message.is_starred,
        })
        return Ok(message)

    async def _mark_read(self, payload: Dict[str, Any]) -> Result:
        chat_id = int(payload["chat_id"])
        user_id = int(payload["user_id"])
        async with self._session_factory() as db:
            if not await ChatRepository(db).is_member(chat_id, user_id):
                return Err(ErrorKind.NOT_ALLOWED, "No access to this chat")
            message_repo = MessageRepository(db)
            marked = await message_repo.mark_chat_read(chat_id, user_id)
            messages = [message_to_schema(await message_repo.get_by_id(message_id)) for message_id in marked]

        for message in messages:
            await self.feed.publish(Resource.MESSAGES, ChangeKind.UPDATE, {
                "id": message.id, "chat_id": message.chat_id, "read_by": sorted(message.read_by),
            })
        return Ok(len(messages))

    async def _leave_chat(self, payload: Dict[str, Any]) -> Result:
        chat_id = int(payload["chat_id"])
        user_id = int(payload["user_id"])
        async with self._session_factory() as db:
            chat_repo = ChatRepository(db)
            member = await chat_repo.get_member(chat_id, user_id)
            if member is None:
                return Err(ErrorKind.NOT_FOUND, f"user {user_id} is not in chat {chat_id}")
            participant = participant_to_schema(member)
            await chat_repo.remove_member(chat_id, user_id)

        await self.feed.publish(Resource.PARTICIPANTS, ChangeKind.DELETE, participant.model_dump(mode="json"))
        return Ok(participant)

    # Administrative helpers used for seeding and by the store server

    async def create_user(self, username: str, display_name: Optional[str] = None,
                          avatar_url: Optional[str] = None) -> UserProfile:
        async with self._session_factory() as db:
            return user_to_schema(await UserRepository(db).create(username, display_name, avatar_url))

    async def find_user(self, username: str) -> Optional[UserProfile]:
        async with self._session_factory() as db:
            user = await UserRepository(db).get_by_username(username)
            return user_to_schema(user) if user else None

    async def create_direct_chat(self, creator_id: int, recipient_id: int) -> Chat:
        async with self._session_factory() as db:
            row = await ChatRepository(db).create_direct_chat(creator_id, recipient_id)
            chat = chat_to_schema(row)
        await self._publish_new_chat(chat)
        return chat

    async def create_group_chat(self, creator_id: int, name: str, member_ids: List[int],
                                chat_type: ChatType = ChatType.GROUP, description: Optional[str] = None) -> Chat:
        async with self._session_factory() as db:
            row = await ChatRepository(db).create_group_chat(creator_id, name, member_ids, chat_type, description)
            chat = chat_to_schema(row)
        await self._publish_new_chat(chat)
        return chat

    async def _publish_new_chat(self, chat: Chat) -> None:
        await self.feed.publish(Resource.CHATS, ChangeKind.INSERT, chat.model_dump(mode="json"))
        for participant in chat.participants:
            await self.feed.publish(Resource.PARTICIPANTS, ChangeKind.INSERT, participant.model_dump(mode="json"))

    async def add_member(self, chat_id: int, user_id: int, is_admin: bool = False) -> Optional[Participant]:
        async with self._session_factory() as db:
            member = await ChatRepository(db).add_member(chat_id, user_id, is_admin)
            if member is None:
                return None
            participant = participant_to_schema(member)
        await self.feed.publish(Resource.PARTICIPANTS, ChangeKind.INSERT, participant.model_dump(mode="json"))
        return participant

    async def rename_chat(self, chat_id: int, name: str) -> bool:
        async with self._session_factory() as db:
            chat_repo = ChatRepository(db)
            row = await chat_repo.get_by_id(chat_id)
            if row is None:
                return False
            row.name = name
            await db.commit()
        await self.feed.publish(Resource.CHATS, ChangeKind.UPDATE, {"id": chat_id, "name": name})
        return True

    async def delete_chat(self, chat_id: int) -> bool:
        async with self._session_factory() as db:
            deleted = await ChatRepository(db).delete(chat_id)
        if deleted:
            await self.feed.publish(Resource.CHATS, ChangeKind.DELETE, {"id": chat_id})
        return deleted

    async def create_relationship(self, kind: RelationshipKind, from_user_id: int, to_user_id: int,
                                  reason: Optional[str] = None) -> Relationship:
        async with self._session_factory() as db:
            row = await SocialRepository(db).create_relationship(kind, from_user_id, to_user_id, reason)
            relationship = Relationship.model_validate(row, from_attributes=True)
        await self.feed.publish(Resource.RELATIONSHIPS, ChangeKind.INSERT, relationship.model_dump(mode="json"))
        return relationship

    async def set_relationship_status(self, relationship_id: int,
                                      status: RelationshipStatus) -> Optional[Relationship]:
        async with self._session_factory() as db:
            row = await SocialRepository(db).set_status(relationship_id, status)
            if row is None:
                return None
            relationship = Relationship.model_validate(row, from_attributes=True)
        await self.feed.publish(Resource.RELATIONSHIPS, ChangeKind.UPDATE, relationship.model_dump(mode="json"))
        return relationship

    async def delete_relationship(self, relationship_id: int) -> bool:
        async with self._session_factory() as db:
            row = await SocialRepository(db).delete_relationship(relationship_id)
            if row is None:
                return False
            relationship = Relationship.model_validate(row, from_attributes=True)
        await self.feed.publish(Resource.RELATIONSHIPS, ChangeKind.DELETE, relationship.model_dump(mode="json"))
        return True

    async def create_notification(self, user_id: int, title: str, body: Optional[str] = None) -> Notification:
        async with self._session_factory() as db:
            row = await SocialRepository(db).create_notification(user_id, title, body)
            notification = Notification.model_validate(row, from_attributes=True)
        await self.feed.publish(Resource.NOTIFICATIONS, ChangeKind.INSERT, notification.model_dump(mode="json"))
        return notification

    # Push channel

    async def subscribe(
        self,
        resource: Resource,
        filter: Optional[Dict[str, Any]],
        on_event: EventCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> StoreSubscription:
        return self.feed.add(resource, filter, on_event, on_error)
