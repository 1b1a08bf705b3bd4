import inspect
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from chatsync.result import Err, ErrorChannel, ErrorKind, Ok, Result
from chatsync.schemas.events import ChangeEvent, Resource, parse_change_event
from chatsync.session import Session
from chatsync.store.base import RawEvent, StoreSubscription

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Union[Awaitable[None], None]]


class _Channel:
    def __init__(self, key: str, resource: Resource, filter: Dict[str, Any], handler: ChangeHandler):
        self.key = key
        self.resource = Resource(resource)
        self.filter = filter
        self.handler = handler
        self.subscription: Optional[StoreSubscription] = None
        self.active = True


class SubscriptionManager:
    """
    One logical push channel per resource key.

    Raw payloads are narrowed to ChangeEvents before they reach the handler.
    Delivery is guarded by the channel object itself: once a channel is closed
    or replaced, late events addressed to it are dropped even if a new channel
    with the same key is open.
    """

    def __init__(self, session: Session, errors: Optional[ErrorChannel] = None):
        self.session = session
        self.errors = errors
        self._channels: Dict[str, _Channel] = {}

    def is_open(self, resource_key: str) -> bool:
        return resource_key in self._channels

    @property
    def open_keys(self) -> List[str]:
        return list(self._channels)

    def filter_of(self, resource_key: str) -> Optional[Dict[str, Any]]:
        channel = self._channels.get(resource_key)
        return dict(channel.filter) if channel else None

    async def open(
        self,
        resource_key: str,
        resource: Resource,
        filter: Optional[Dict[str, Any]],
        handler: ChangeHandler,
    ) -> Result:
        """Open a channel; returns Ok(False) without side effects when the key is already open."""
        if resource_key in self._channels:
            return Ok(False)

        channel = _Channel(resource_key, resource, dict(filter or {}), handler)
        # registered before the await so a concurrent open of the same key is a no-op
        self._channels[resource_key] = channel
        try:
            subscription = await self.session.store.subscribe(
                channel.resource,
                channel.filter,
                partial(self._on_raw_event, channel),
                partial(self._on_transport_error, channel),
            )
        except Exception as exc:
            channel.active = False
            if self._channels.get(resource_key) is channel:
                del self._channels[resource_key]
            logger.warning("Could not open subscription %s: %s", resource_key, exc)
            error = Err(ErrorKind.SUBSCRIPTION_FAILED, f"{resource_key}: {exc}")
            if self.errors is not None:
                self.errors.report(error)
            return error

        channel.subscription = subscription
        if not channel.active:
            # closed while the channel was being established
            await self._close_subscription(channel)
            return Ok(False)

        logger.debug("Opened subscription %s on %s %s", resource_key, channel.resource.value, channel.filter)
        return Ok(True)

    async def close(self, resource_key: str) -> bool:
        channel = self._channels.pop(resource_key, None)
        if channel is None:
            return False
        channel.active = False
        await self._close_subscription(channel)
        logger.debug("Closed subscription %s", resource_key)
        return True

    async def close_all(self) -> None:
        for resource_key in list(self._channels):
            await self.close(resource_key)

    async def _close_subscription(self, channel: _Channel) -> None:
        if channel.subscription is None:
            return
        try:
            await channel.subscription.close()
        except Exception:
            logger.exception("Failed to close subscription %s", channel.key)

    async def _on_raw_event(self, channel: _Channel, raw: RawEvent) -> None:
        if not channel.active or self._channels.get(channel.key) is not channel:
            logger.debug("Dropping event for closed subscription %s", channel.key)
            return

        parsed = parse_change_event(raw)
        if not parsed.ok:
            logger.warning("Dropping event on %s: %s", channel.key, parsed)
            return

        try:
            result = channel.handler(parsed.value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Handler for %s failed on %s event", channel.key, raw.get("kind"))

    async def _on_transport_error(self, channel: _Channel, exc: Exception) -> None:
        if self._channels.get(channel.key) is not channel:
            return
        del self._channels[channel.key]
        channel.active = False
        await self._close_subscription(channel)
        logger.warning("Subscription %s dropped: %s", channel.key, exc)
        if self.errors is not None:
            self.errors.report(Err(ErrorKind.SUBSCRIPTION_FAILED, f"{channel.key}: {exc}"))
