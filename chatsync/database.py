from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from chatsync.config import settings


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(database_url or settings.DATABASE_URL, echo=settings.DEBUG)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine):
    from chatsync.models.base import Base
    from chatsync.models import user, chat, chat_member, message, message_read_receipt, relationship, notification
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
