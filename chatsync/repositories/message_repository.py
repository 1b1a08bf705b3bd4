from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, desc, func
from sqlalchemy.orm import selectinload

from chatsync.models.message import Message
from chatsync.models.message_read_receipt import MessageReadReceipt
from chatsync.schemas.message import MessageCreate

class MessageRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, message_data: MessageCreate, sender_id: int) -> Message:
        """Create a message; a repeated client_message_id returns the existing row"""
        if message_data.client_message_id:
            existing_message = await self.get_by_client_id(
                message_data.client_message_id,
                sender_id,
                message_data.chat_id
            )
            if existing_message:
                return existing_message

        message = Message(
            chat_id=message_data.chat_id,
            sender_id=sender_id,
            text=message_data.text,
            attachment=message_data.attachment.model_dump() if message_data.attachment else None,
            reply_to_id=message_data.reply_to_id,
            client_message_id=message_data.client_message_id,
            reactions={},
        )
        self.db.add(message)
        await self.db.commit()
        return await self.get_by_id(message.id)

    async def get_by_id(self, message_id: int) -> Optional[Message]:
        """Fetch a message with its read receipts"""
        result = await self.db.execute(
            select(Message).options(
                selectinload(Message.read_receipts)
            ).where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_client_id(self, client_message_id: str, sender_id: int, chat_id: int) -> Optional[Message]:
        """Look up a message by its correlation token"""
        result = await self.db.execute(
            select(Message).options(
                selectinload(Message.read_receipts)
            ).where(
                and_(
                    Message.client_message_id == client_message_id,
                    Message.sender_id == sender_id,
                    Message.chat_id == chat_id
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_chat_tail(self, chat_id: int, limit: int = 50) -> List[Message]:
        """Latest messages of a chat, ordered oldest first"""
        result = await self.db.execute(
            select(Message).options(
                selectinload(Message.read_receipts)
            ).where(Message.chat_id == chat_id)
            .order_by(desc(Message.timestamp), desc(Message.id))
            .limit(limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return messages

    async def get_last_message(self, chat_id: int) -> Optional[Message]:
        result = await self.db.execute(
            select(Message).options(
                selectinload(Message.read_receipts)
            ).where(Message.chat_id == chat_id)
            .order_by(desc(Message.timestamp), desc(Message.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_unread(self, chat_id: int, user_id: int) -> int:
        """Messages of other users in the chat without a read receipt from user_id"""
        read_messages_subquery = select(MessageReadReceipt.message_id).where(
            MessageReadReceipt.user_id == user_id
        )
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                and_(
                    Message.chat_id == chat_id,
                    Message.sender_id != user_id,
                    Message.id.not_in(read_messages_subquery)
                )
            )
        )
        return result.scalar() or 0

    async def mark_chat_read(self, chat_id: int, user_id: int) -> List[int]:
        """Add read receipts for every unread message of the chat; returns the marked ids"""
        read_messages_subquery = select(MessageReadReceipt.message_id).where(
            MessageReadReceipt.user_id == user_id
        )
        result = await self.db.execute(
            select(Message.id).where(
                and_(
                    Message.chat_id == chat_id,
                    Message.sender_id != user_id,
                    Message.id.not_in(read_messages_subquery)
                )
            )
        )
        message_ids = list(result.scalars().all())
        for message_id in message_ids:
            self.db.add(MessageReadReceipt(message_id=message_id, user_id=user_id, read_at=datetime.utcnow()))
        await self.db.commit()
        return message_ids

    async def update(self, message_id: int, changes: Dict[str, Any]) -> Optional[Message]:
        """Apply a partial update"""
        message = await self.get_by_id(message_id)
        if not message:
            return None

        for field, value in changes.items():
            setattr(message, field, value)

        await self.db.commit()
        return await self.get_by_id(message_id)

    async def toggle_reaction(self, message_id: int, user_id: int, emoji: str) -> Optional[Message]:
        """Add the user's reaction, or remove it when already present"""
        message = await self.get_by_id(message_id)
        if not message:
            return None

        reactions = {key: list(users) for key, users in (message.reactions or {}).items()}
        users = reactions.setdefault(emoji, [])
        if user_id in users:
            users.remove(user_id)
        else:
            users.append(user_id)
        if not users:
            del reactions[emoji]
        # JSON columns are not mutation-tracked
        message.reactions = reactions

        await self.db.commit()
        return await self.get_by_id(message_id)

    async def soft_delete(self, message_id: int, marker: str) -> Optional[Message]:
        """Rewrite a message to the deletion marker, keeping its row and position"""
        return await self.update(message_id, {
            "text": marker,
            "attachment": None,
            "reactions": {},
            "is_edited": False,
        })
