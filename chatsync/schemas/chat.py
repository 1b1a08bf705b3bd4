from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum

from chatsync.schemas.message import ensure_utc, utcnow


class ChatType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"


class UserProfile(BaseModel):
    id: int
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username


class Participant(BaseModel):
    chat_id: int
    user_id: int
    is_admin: bool = False
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        return self.display_name or self.username


class Chat(BaseModel):
    id: int
    chat_type: ChatType = ChatType.DIRECT
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    description: Optional[str] = None
    creator_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    participants: List[Participant] = Field(default_factory=list)
    last_message_content: Optional[str] = None
    last_message_timestamp: Optional[datetime] = None
    unread_count: int = 0

    @field_validator("created_at", "last_message_timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)

    @field_validator("unread_count")
    @classmethod
    def clamp_unread(cls, value: int) -> int:
        return max(0, value)

    @property
    def activity_timestamp(self) -> datetime:
        return self.last_message_timestamp or self.created_at

    def participant(self, user_id: int) -> Optional[Participant]:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def is_admin(self, user_id: int) -> bool:
        participant = self.participant(user_id)
        return bool(participant and participant.is_admin)


class ChatPatch(BaseModel):
    id: int
    chat_type: Optional[ChatType] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    description: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_timestamp: Optional[datetime] = None

    @field_validator("last_message_timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)


class ChatRef(BaseModel):
    id: int
