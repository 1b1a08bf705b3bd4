from .base import Base
from .user import User
from .chat import Chat
from .chat_member import ChatMember
from .message import Message
from .message_read_receipt import MessageReadReceipt
from .relationship import Relationship
from .notification import Notification

__all__ = [
    "Base",
    "User", 
    "Chat",
    "ChatMember",
    "Message",
    "MessageReadReceipt",
    "Relationship",
    "Notification",
]
