from enum import Enum
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from chatsync.result import Err, ErrorKind, Ok, Result
from chatsync.schemas.chat import Chat, ChatPatch, ChatRef, Participant
from chatsync.schemas.message import Message, MessagePatch, MessageRef
from chatsync.schemas.social import Notification, Relationship


class Resource(str, Enum):
    MESSAGES = "messages"
    CHATS = "chats"
    PARTICIPANTS = "participants"
    RELATIONSHIPS = "relationships"
    NOTIFICATIONS = "notifications"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MessageInserted(BaseModel):
    resource: Literal["messages"] = "messages"
    kind: Literal["insert"] = "insert"
    record: Message


class MessageUpdated(BaseModel):
    resource: Literal["messages"] = "messages"
    kind: Literal["update"] = "update"
    record: MessagePatch


class MessageDeleted(BaseModel):
    resource: Literal["messages"] = "messages"
    kind: Literal["delete"] = "delete"
    record: MessageRef


class ChatInserted(BaseModel):
    resource: Literal["chats"] = "chats"
    kind: Literal["insert"] = "insert"
    record: Chat


class ChatUpdated(BaseModel):
    resource: Literal["chats"] = "chats"
    kind: Literal["update"] = "update"
    record: ChatPatch


class ChatDeleted(BaseModel):
    resource: Literal["chats"] = "chats"
    kind: Literal["delete"] = "delete"
    record: ChatRef


class ParticipantChanged(BaseModel):
    resource: Literal["participants"] = "participants"
    kind: ChangeKind
    record: Participant


class RelationshipChanged(BaseModel):
    resource: Literal["relationships"] = "relationships"
    kind: ChangeKind
    record: Relationship


class NotificationChanged(BaseModel):
    resource: Literal["notifications"] = "notifications"
    kind: ChangeKind
    record: Notification


MessageChange = Annotated[
    Union[MessageInserted, MessageUpdated, MessageDeleted],
    Field(discriminator="kind"),
]

ChatChange = Annotated[
    Union[ChatInserted, ChatUpdated, ChatDeleted],
    Field(discriminator="kind"),
]

ChangeEvent = Annotated[
    Union[MessageChange, ChatChange, ParticipantChanged, RelationshipChanged, NotificationChanged],
    Field(discriminator="resource"),
]

_change_event_adapter = TypeAdapter(ChangeEvent)


def parse_change_event(raw: Dict[str, Any]) -> Result:
    """Narrow a raw push payload into a typed ChangeEvent."""
    try:
        return Ok(_change_event_adapter.validate_python(raw))
    except ValidationError as exc:
        return Err(ErrorKind.INVALID, f"malformed change event: {exc.error_count()} error(s)")


def dump_change_event(event: BaseModel) -> Dict[str, Any]:
    return event.model_dump(mode="json")
