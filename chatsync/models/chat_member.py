from datetime import datetime

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import BaseModel

class ChatMember(BaseModel):
    __tablename__ = "chat_members"
    
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    
    chat = relationship("Chat", back_populates="members")
    user = relationship("User", back_populates="chat_memberships")
    
    __table_args__ = (
        UniqueConstraint("chat_id", "user_id", name="unique_chat_member"),
    )
