from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_, desc

from chatsync.models.relationship import Relationship
from chatsync.models.notification import Notification
from chatsync.schemas.social import RelationshipKind, RelationshipStatus

class SocialRepository:
    """Blocks, DM requests and notifications of a user"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_relationships(self, user_id: int) -> List[Relationship]:
        """Relationships where the user is on either side"""
        result = await self.db.execute(
            select(Relationship).where(
                or_(Relationship.from_user_id == user_id, Relationship.to_user_id == user_id)
            ).order_by(Relationship.id)
        )
        return list(result.scalars().all())

    async def get_relationship(self, relationship_id: int) -> Optional[Relationship]:
        result = await self.db.execute(select(Relationship).where(Relationship.id == relationship_id))
        return result.scalar_one_or_none()

    async def create_relationship(
        self,
        kind: RelationshipKind,
        from_user_id: int,
        to_user_id: int,
        reason: Optional[str] = None,
    ) -> Relationship:
        relationship = Relationship(
            kind=kind,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=RelationshipStatus.PENDING if kind == RelationshipKind.DM_REQUEST else None,
            reason=reason,
        )
        self.db.add(relationship)
        await self.db.commit()
        await self.db.refresh(relationship)
        return relationship

    async def set_status(self, relationship_id: int, status: RelationshipStatus) -> Optional[Relationship]:
        relationship = await self.get_relationship(relationship_id)
        if not relationship:
            return None

        relationship.status = status
        await self.db.commit()
        await self.db.refresh(relationship)
        return relationship

    async def delete_relationship(self, relationship_id: int) -> Optional[Relationship]:
        """Delete and return the removed row so the change can be published"""
        relationship = await self.get_relationship(relationship_id)
        if not relationship:
            return None

        await self.db.delete(relationship)
        await self.db.commit()
        return relationship

    async def get_user_notifications(self, user_id: int, limit: int = 50) -> List[Notification]:
        """Newest notifications first"""
        result = await self.db.execute(
            select(Notification).where(Notification.user_id == user_id)
            .order_by(desc(Notification.created_at), desc(Notification.id))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def create_notification(self, user_id: int, title: str, body: Optional[str] = None) -> Notification:
        notification = Notification(user_id=user_id, title=title, body=body)
        self.db.add(notification)
        await self.db.commit()
        await self.db.refresh(notification)
        return notification
