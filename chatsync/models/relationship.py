from sqlalchemy import Column, Integer, ForeignKey, Enum, Text
from .base import BaseModel
from chatsync.schemas.social import RelationshipKind, RelationshipStatus

class Relationship(BaseModel):
    __tablename__ = "relationships"
    
    kind = Column(Enum(RelationshipKind), nullable=False, index=True)
    from_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    to_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(RelationshipStatus), nullable=True)
    reason = Column(Text, nullable=True)
