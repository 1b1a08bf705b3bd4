from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from enum import Enum

from chatsync.schemas.chat import Chat, UserProfile
from chatsync.schemas.message import Message
from chatsync.schemas.social import Notification, Relationship


class WriteKind(str, Enum):
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"
    REACT = "react"
    PIN = "pin"
    STAR = "star"
    MARK_READ = "mark_read"
    LEAVE_CHAT = "leave_chat"


class BulkLoad(BaseModel):
    viewer: Optional[UserProfile] = None
    chats: List[Chat] = Field(default_factory=list)
    messages: Dict[int, List[Message]] = Field(default_factory=dict)
    relationships: List[Relationship] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)
    users: List[UserProfile] = Field(default_factory=list)


class WriteRequest(BaseModel):
    kind: WriteKind
    payload: Dict[str, Any] = Field(default_factory=dict)


class WriteResponse(BaseModel):
    ok: bool = True
    record: Optional[Any] = None


class SubscribeRequest(BaseModel):
    key: str
    resource: str
    filter: Dict[str, Any] = Field(default_factory=dict)


class UnsubscribeRequest(BaseModel):
    key: str
