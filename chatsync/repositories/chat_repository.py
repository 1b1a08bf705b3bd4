from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, delete as sa_delete
from sqlalchemy.orm import selectinload

from chatsync.models.chat import Chat
from chatsync.models.chat_member import ChatMember
from chatsync.models.message import Message
from chatsync.models.message_read_receipt import MessageReadReceipt
from chatsync.schemas.chat import ChatType

class ChatRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_direct_chat(self, creator_id: int, recipient_id: int) -> Chat:
        """Create a direct chat between two users, or return the existing one"""
        existing_chat = await self.get_direct_chat_between_users(creator_id, recipient_id)
        if existing_chat:
            return existing_chat

        chat = Chat(
            chat_type=ChatType.DIRECT,
            creator_id=creator_id
        )
        self.db.add(chat)
        await self.db.flush()

        self.db.add(ChatMember(chat_id=chat.id, user_id=creator_id, is_admin=True))
        self.db.add(ChatMember(chat_id=chat.id, user_id=recipient_id, is_admin=False))

        await self.db.commit()
        return await self.get_by_id(chat.id)

    async def create_group_chat(
        self,
        creator_id: int,
        name: str,
        member_ids: List[int],
        chat_type: ChatType = ChatType.GROUP,
        description: Optional[str] = None,
    ) -> Chat:
        """Create a group or channel chat; the creator becomes its admin"""
        chat = Chat(
            name=name,
            chat_type=chat_type,
            creator_id=creator_id,
            description=description,
        )
        self.db.add(chat)
        await self.db.flush()

        self.db.add(ChatMember(chat_id=chat.id, user_id=creator_id, is_admin=True))
        for member_id in member_ids:
            if member_id != creator_id:
                self.db.add(ChatMember(chat_id=chat.id, user_id=member_id, is_admin=False))

        await self.db.commit()
        return await self.get_by_id(chat.id)

    async def get_by_id(self, chat_id: int) -> Optional[Chat]:
        """Fetch a chat with its members and their users"""
        result = await self.db.execute(
            select(Chat).options(
                selectinload(Chat.members).selectinload(ChatMember.user)
            ).where(Chat.id == chat_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_user_chats(self, user_id: int) -> List[Chat]:
        """All chats the user participates in"""
        result = await self.db.execute(
            select(Chat).join(ChatMember).options(
                selectinload(Chat.members).selectinload(ChatMember.user)
            ).where(ChatMember.user_id == user_id)
        )
        return list(result.scalars().all())

    async def get_direct_chat_between_users(self, user_id1: int, user_id2: int) -> Optional[Chat]:
        user1_chats = select(ChatMember.chat_id).where(ChatMember.user_id == user_id1)
        user2_chats = select(ChatMember.chat_id).where(ChatMember.user_id == user_id2)

        result = await self.db.execute(
            select(Chat).options(
                selectinload(Chat.members).selectinload(ChatMember.user)
            ).where(
                and_(
                    Chat.chat_type == ChatType.DIRECT,
                    Chat.id.in_(user1_chats),
                    Chat.id.in_(user2_chats)
                )
            )
        )
        return result.scalars().first()

    async def get_member(self, chat_id: int, user_id: int) -> Optional[ChatMember]:
        result = await self.db.execute(
            select(ChatMember).options(
                selectinload(ChatMember.user)
            ).where(
                and_(ChatMember.chat_id == chat_id, ChatMember.user_id == user_id)
            )
        )
        return result.scalar_one_or_none()

    async def add_member(self, chat_id: int, user_id: int, is_admin: bool = False) -> Optional[ChatMember]:
        """Add a participant; returns None when already a member"""
        if await self.get_member(chat_id, user_id):
            return None

        member = ChatMember(chat_id=chat_id, user_id=user_id, is_admin=is_admin)
        self.db.add(member)
        await self.db.commit()
        return await self.get_member(chat_id, user_id)

    async def remove_member(self, chat_id: int, user_id: int) -> bool:
        member = await self.get_member(chat_id, user_id)
        if not member:
            return False

        await self.db.delete(member)
        await self.db.commit()
        return True

    async def is_member(self, chat_id: int, user_id: int) -> bool:
        return await self.get_member(chat_id, user_id) is not None

    async def delete(self, chat_id: int) -> bool:
        """Delete a chat together with its members, messages and receipts"""
        if not await self.get_by_id(chat_id):
            return False

        message_ids = select(Message.id).where(Message.chat_id == chat_id)
        await self.db.execute(sa_delete(MessageReadReceipt).where(MessageReadReceipt.message_id.in_(message_ids)))
        await self.db.execute(sa_delete(Message).where(Message.chat_id == chat_id))
        await self.db.execute(sa_delete(ChatMember).where(ChatMember.chat_id == chat_id))
        await self.db.execute(sa_delete(Chat).where(Chat.id == chat_id))
        await self.db.commit()
        return True
