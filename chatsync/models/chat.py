from sqlalchemy import Column, String, Enum, Integer, ForeignKey, Text
from sqlalchemy.orm import relationship
from .base import BaseModel
from chatsync.schemas.chat import ChatType

class Chat(BaseModel):
    __tablename__ = "chats"
    
    name = Column(String(100), nullable=True)  # group and channel chats only
    chat_type = Column(Enum(ChatType), nullable=False, default=ChatType.DIRECT)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    avatar_url = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    
    creator = relationship("User", foreign_keys=[creator_id], back_populates="created_chats")
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan")
    members = relationship("ChatMember", back_populates="chat", cascade="all, delete-orphan")
