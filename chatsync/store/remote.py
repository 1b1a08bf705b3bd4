"""
Message Store Service client for the store server.

HTTP calls use a ``requests.Session`` run in a worker thread; every push
channel subscription shares one ``websockets`` connection that is opened on
first use.
"""

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import websockets
from pydantic import TypeAdapter, ValidationError

from chatsync.config import Settings, settings as default_settings
from chatsync.result import Err, ErrorKind, Ok, Result
from chatsync.schemas.chat import Chat, Participant
from chatsync.schemas.events import Resource
from chatsync.schemas.message import Message
from chatsync.schemas.sync import BulkLoad, WriteKind
from chatsync.store.base import (
    ErrorCallback,
    EventCallback,
    MessageStoreService,
    StoreSubscription,
)

logger = logging.getLogger(__name__)

_chat_list_adapter = TypeAdapter(List[Chat])
_message_list_adapter = TypeAdapter(List[Message])

RECORD_PARSERS: Dict[WriteKind, Callable[[Any], Any]] = {
    WriteKind.SEND: Message.model_validate,
    WriteKind.EDIT: Message.model_validate,
    WriteKind.DELETE: Message.model_validate,
    WriteKind.REACT: Message.model_validate,
    WriteKind.PIN: Message.model_validate,
    WriteKind.STAR: Message.model_validate,
    WriteKind.MARK_READ: int,
    WriteKind.LEAVE_CHAT: Participant.model_validate,
}


async def _call(callback, *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class RemoteSubscription(StoreSubscription):
    def __init__(self, channel: "PushChannel", key: str):
        self._channel = channel
        self.key = key

    async def close(self) -> None:
        await self._channel.unsubscribe(self.key)


class PushChannel:
    """A single websocket connection multiplexing every subscription by key."""

    def __init__(self, url: str, viewer_id: int, ack_timeout: float = 10.0):
        self.url = url
        self.viewer_id = viewer_id
        self.ack_timeout = ack_timeout
        self._websocket = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Tuple[EventCallback, Optional[ErrorCallback]]] = {}
        self._acks: Dict[str, asyncio.Future] = {}
        self._closing = False
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._websocket is not None:
                return
            self._closing = False
            self._websocket = await websockets.connect(f"{self.url}?viewer_id={self.viewer_id}")
            self._reader = asyncio.create_task(self._read_loop(self._websocket))
        logger.info("Push channel connected to %s", self.url)

    async def send(self, action: str, data: Optional[Dict[str, Any]] = None) -> None:
        frame = {"action": action}
        if data is not None:
            frame["data"] = data
        await self._websocket.send(json.dumps(frame))

    async def subscribe(
        self,
        key: str,
        resource: Resource,
        filter: Optional[Dict[str, Any]],
        on_event: EventCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        await self.connect()
        ack = asyncio.get_running_loop().create_future()
        self._acks[key] = ack
        self._handlers[key] = (on_event, on_error)
        try:
            await self.send("subscribe", {"key": key, "resource": Resource(resource).value, "filter": filter or {}})
            await asyncio.wait_for(ack, self.ack_timeout)
        except Exception:
            self._handlers.pop(key, None)
            raise
        finally:
            self._acks.pop(key, None)

    async def unsubscribe(self, key: str) -> None:
        if self._handlers.pop(key, None) is None or self._websocket is None:
            return
        try:
            await self.send("unsubscribe", {"key": key})
        except websockets.ConnectionClosed:
            logger.debug("Push channel already closed while unsubscribing %s", key)

    async def _read_loop(self, websocket) -> None:
        error: Optional[Exception] = None
        try:
            async for raw in websocket:
                await self._dispatch(raw)
        except websockets.ConnectionClosed as exc:
            error = exc
        if self._websocket is websocket:
            self._websocket = None
        if not self._closing:
            await self._fail(error or ConnectionError("push channel closed by the server"))

    async def _dispatch(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed push frame")
            return

        frame_type = frame.get("type")
        key = frame.get("key")
        if frame_type == "change":
            handlers = self._handlers.get(key)
            if handlers is None:
                return
            try:
                await _call(handlers[0], frame.get("data") or {})
            except Exception:
                logger.exception("Push handler for %s failed", key)
        elif frame_type == "subscribed":
            ack = self._acks.get(key)
            if ack is not None and not ack.done():
                ack.set_result(True)
        elif frame_type == "error":
            ack = self._acks.get(key) if key else None
            if ack is not None and not ack.done():
                ack.set_exception(RuntimeError(frame.get("message") or "subscription refused"))
            else:
                logger.warning("Store server error: %s", frame.get("message"))

    async def _fail(self, error: Exception) -> None:
        # subscriptions still waiting for their ack learn about the failure from subscribe()
        handlers = [handler for key, handler in self._handlers.items() if key not in self._acks]
        self._handlers = {}
        for ack in self._acks.values():
            if not ack.done():
                ack.set_exception(error)
        logger.warning("Push channel lost: %s", error)
        for _on_event, on_error in handlers:
            if on_error is None:
                continue
            try:
                await _call(on_error, error)
            except Exception:
                logger.exception("Push error callback failed")

    async def close(self) -> None:
        self._closing = True
        self._handlers.clear()
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None


class RemoteMessageStore(MessageStoreService):
    def __init__(
        self,
        viewer_id: int,
        base_url: Optional[str] = None,
        ws_url: Optional[str] = None,
        settings: Settings = default_settings,
        http: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.base_url = (base_url or settings.STORE_URL).rstrip("/")
        self.http = http or requests.Session()
        self.push = PushChannel(ws_url or settings.STORE_WS_URL, viewer_id, settings.HTTP_TIMEOUT)
        self._keys = itertools.count(1)

    def _request(self, method: str, path: str, failure_kind: ErrorKind, **kwargs) -> Result:
        url = f"{self.base_url}/api/v1{path}"
        try:
            response = self.http.request(method, url, timeout=self.settings.HTTP_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            return Err(failure_kind, str(exc))

        if response.status_code >= 400:
            return self._error_from_response(response, failure_kind)
        try:
            return Ok(response.json())
        except ValueError:
            return Err(failure_kind, f"non-JSON response from {url}")

    @staticmethod
    def _error_from_response(response, failure_kind: ErrorKind) -> Err:
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = None

        if isinstance(detail, dict):
            try:
                return Err(ErrorKind(detail.get("kind")), detail.get("message") or "")
            except ValueError:
                return Err(failure_kind, str(detail.get("message")))
        if response.status_code == 422:
            return Err(ErrorKind.INVALID, str(detail))
        return Err(failure_kind, str(detail) if detail else f"HTTP {response.status_code}")

    async def bulk_load(self, viewer_id: int) -> Result:
        result = await asyncio.to_thread(
            self._request, "GET", "/sync/bulk", ErrorKind.BULK_LOAD_FAILED, params={"viewer_id": viewer_id},
        )
        if not result.ok:
            return result
        try:
            return Ok(BulkLoad.model_validate(result.value))
        except ValidationError as exc:
            return Err(ErrorKind.BULK_LOAD_FAILED, f"malformed bulk load: {exc.error_count()} error(s)")

    async def load_chats(self, viewer_id: int) -> Result:
        result = await asyncio.to_thread(
            self._request, "GET", "/sync/chats", ErrorKind.BULK_LOAD_FAILED, params={"viewer_id": viewer_id},
        )
        if not result.ok:
            return result
        try:
            return Ok(_chat_list_adapter.validate_python(result.value))
        except ValidationError as exc:
            return Err(ErrorKind.BULK_LOAD_FAILED, f"malformed chat list: {exc.error_count()} error(s)")

    async def load_messages(self, viewer_id: int, chat_id: int) -> Result:
        result = await asyncio.to_thread(
            self._request, "GET", f"/sync/chats/{chat_id}/messages", ErrorKind.BULK_LOAD_FAILED,
            params={"viewer_id": viewer_id},
        )
        if not result.ok:
            return result
        try:
            return Ok(_message_list_adapter.validate_python(result.value))
        except ValidationError as exc:
            return Err(ErrorKind.BULK_LOAD_FAILED, f"malformed history: {exc.error_count()} error(s)")

    async def write(self, kind: WriteKind, payload: Dict[str, Any]) -> Result:
        try:
            kind = WriteKind(kind)
        except ValueError:
            return Err(ErrorKind.INVALID, f"unsupported write kind {kind!r}")
        result = await asyncio.to_thread(
            self._request, "POST", "/sync/write", ErrorKind.WRITE_FAILED,
            json={"kind": kind.value, "payload": payload},
        )
        if not result.ok:
            return result
        try:
            return Ok(RECORD_PARSERS[kind](result.value.get("record")))
        except (ValidationError, TypeError, ValueError) as exc:
            return Err(ErrorKind.WRITE_FAILED, f"malformed {kind.value} response: {exc}")

    async def subscribe(
        self,
        resource: Resource,
        filter: Optional[Dict[str, Any]],
        on_event: EventCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> StoreSubscription:
        key = f"sub-{next(self._keys)}"
        await self.push.subscribe(key, resource, filter, on_event, on_error)
        return RemoteSubscription(self.push, key)

    async def close(self) -> None:
        await self.push.close()
        await asyncio.to_thread(self.http.close)
