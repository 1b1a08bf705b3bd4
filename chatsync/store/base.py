"""
Message Store Service interface.

The engine talks to the authoritative message log only through this
interface. Implementations never raise for expected failures: every call
returns an ``Ok``/``Err`` result, and push channels report transport
failures through ``on_error``.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from chatsync.result import Result
from chatsync.schemas.events import Resource
from chatsync.schemas.sync import WriteKind

RawEvent = Dict[str, Any]
EventCallback = Callable[[RawEvent], Union[Awaitable[None], None]]
ErrorCallback = Callable[[Exception], Union[Awaitable[None], None]]


def _as_values(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def matches_filter(record: Mapping[str, Any], filter: Optional[Mapping[str, Any]]) -> bool:
    """
    Check a record against a subscription filter.

    Each key maps to a value or a collection of accepted values. A key of the
    form ``a|b`` matches when either field matches.
    """
    for key, expected in (filter or {}).items():
        accepted = _as_values(expected)
        if not any(record.get(field) in accepted for field in key.split("|")):
            return False
    return True


class StoreSubscription(ABC):
    """Handle of one open push channel."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery; idempotent."""
        pass


class MessageStoreService(ABC):
    """Abstract interface of the authoritative message store."""

    @abstractmethod
    async def bulk_load(self, viewer_id: int) -> Result:
        """One-shot fan-out load of chats, message tails, relationships and notifications."""
        pass

    @abstractmethod
    async def load_chats(self, viewer_id: int) -> Result:
        """Reload only the viewer's chat list (with participants and unread counts)."""
        pass

    @abstractmethod
    async def load_messages(self, viewer_id: int, chat_id: int) -> Result:
        """History tail of one chat the viewer belongs to, oldest first."""
        pass

    @abstractmethod
    async def write(self, kind: WriteKind, payload: Dict[str, Any]) -> Result:
        """Perform one independent, non-transactional write."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        resource: Resource,
        filter: Optional[Dict[str, Any]],
        on_event: EventCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> StoreSubscription:
        """Open a push channel for a resource; raises only if the channel cannot be established."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
