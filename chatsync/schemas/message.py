from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Set, Union
from datetime import datetime, timezone


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive timestamps from the store are UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Attachment(BaseModel):
    name: str
    type: str
    size: int = 0
    url: Optional[str] = None
    duration: Optional[float] = None
    waveform: Optional[List[float]] = None


class MessageBase(BaseModel):
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    reply_to_id: Optional[int] = None


class MessageCreate(MessageBase):
    chat_id: int
    client_message_id: Optional[str] = None


class Message(MessageBase):
    id: Union[int, str]
    chat_id: int
    sender_id: int
    timestamp: datetime = Field(default_factory=utcnow)
    is_edited: bool = False
    is_pinned: bool = False
    is_starred: bool = False
    reactions: Dict[str, Set[int]] = Field(default_factory=dict)
    read_by: Set[int] = Field(default_factory=set)
    client_message_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)

    @property
    def is_pending(self) -> bool:
        return isinstance(self.id, str)

    def preview(self) -> Optional[str]:
        """Text shown as the chat list preview for this message."""
        if self.text:
            return self.text
        if self.attachment:
            return self.attachment.name or "Sent an attachment"
        return None

    def signature(self) -> tuple:
        """Content identity used to pair an echo with a send that carried no token."""
        attachment = self.attachment
        return (
            self.chat_id,
            self.sender_id,
            (self.text or "").strip(),
            (attachment.name, attachment.type, attachment.size) if attachment else None,
        )


class MessagePatch(BaseModel):
    """Partial message payload; only the fields that were sent are merged."""

    id: int
    chat_id: Optional[int] = None
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    reply_to_id: Optional[int] = None
    timestamp: Optional[datetime] = None
    is_edited: Optional[bool] = None
    is_pinned: Optional[bool] = None
    is_starred: Optional[bool] = None
    reactions: Optional[Dict[str, Set[int]]] = None
    read_by: Optional[Set[int]] = None
    client_message_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)


class MessageRef(BaseModel):
    id: int
    chat_id: Optional[int] = None
