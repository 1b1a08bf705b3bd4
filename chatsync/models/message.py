from sqlalchemy import Column, Integer, ForeignKey, Text, DateTime, Boolean, String, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from .base import BaseModel

class Message(BaseModel):
    __tablename__ = "messages"
    
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    text = Column(Text, nullable=True)
    attachment = Column(JSON, nullable=True)
    reply_to_id = Column(Integer, ForeignKey("messages.id"), nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    is_edited = Column(Boolean, default=False, nullable=False)
    is_pinned = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)
    # emoji -> list of user ids
    reactions = Column(JSON, nullable=True)
    
    # correlation token echoed back to the sender to pair optimistic entries
    client_message_id = Column(String(100), nullable=True, index=True)
    
    chat = relationship("Chat", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id], back_populates="sent_messages")
    read_receipts = relationship("MessageReadReceipt", back_populates="message", cascade="all, delete-orphan")
