from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum

from chatsync.schemas.message import ensure_utc, utcnow


class RelationshipKind(str, Enum):
    BLOCK = "block"
    DM_REQUEST = "dm_request"


class RelationshipStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Relationship(BaseModel):
    id: int
    kind: RelationshipKind
    from_user_id: int
    to_user_id: int
    status: Optional[RelationshipStatus] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)


class Notification(BaseModel):
    id: int
    user_id: int
    title: str
    body: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def normalize_timestamp(cls, value):
        return ensure_utc(value)
