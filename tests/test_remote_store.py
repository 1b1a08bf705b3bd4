import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
import websockets

from chatsync.result import ErrorKind
from chatsync.schemas.events import Resource
from chatsync.schemas.message import Message
from chatsync.schemas.sync import WriteKind
from chatsync.store.remote import PushChannel, RemoteMessageStore


def response(status_code=200, body=None):
    mock = MagicMock()
    mock.status_code = status_code
    if isinstance(body, Exception):
        mock.json.side_effect = body
    else:
        mock.json.return_value = body
    return mock


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def remote(http):
    return RemoteMessageStore(1, base_url="http://store.test/", ws_url="ws://store.test/changes", http=http)


MESSAGE = {"id": 5, "chat_id": 2, "sender_id": 1, "text": "hi", "timestamp": "2024-01-01T12:00:00"}


@pytest.mark.asyncio
async def test_write_parses_confirmed_record(remote, http):
    http.request.return_value = response(200, {"ok": True, "record": MESSAGE})

    result = await remote.write(WriteKind.SEND, {"chat_id": 2, "text": "hi", "sender_id": 1})

    assert isinstance(result.value, Message)
    assert result.value.id == 5
    method, url = http.request.call_args.args
    assert (method, url) == ("POST", "http://store.test/api/v1/sync/write")
    assert http.request.call_args.kwargs["json"]["kind"] == "send"


@pytest.mark.asyncio
async def test_write_maps_error_detail(remote, http):
    http.request.return_value = response(403, {"detail": {"kind": "not_allowed", "message": "No access to this chat"}})

    result = await remote.write(WriteKind.SEND, {})

    assert result.kind == ErrorKind.NOT_ALLOWED
    assert result.message == "No access to this chat"


@pytest.mark.asyncio
async def test_write_validation_and_server_errors(remote, http):
    http.request.return_value = response(422, {"detail": [{"msg": "field required"}]})
    assert (await remote.write(WriteKind.EDIT, {})).kind == ErrorKind.INVALID

    http.request.return_value = response(500, ValueError("not json"))
    assert (await remote.write(WriteKind.EDIT, {})).kind == ErrorKind.WRITE_FAILED

    http.request.return_value = response(200, {"ok": True, "record": {"id": "nope"}})
    assert (await remote.write(WriteKind.EDIT, {})).kind == ErrorKind.WRITE_FAILED

    assert (await remote.write("shout", {})).kind == ErrorKind.INVALID


@pytest.mark.asyncio
async def test_transport_failure_becomes_err(remote, http):
    http.request.side_effect = requests.ConnectionError("refused")

    assert (await remote.write(WriteKind.STAR, {})).kind == ErrorKind.WRITE_FAILED
    assert (await remote.bulk_load(1)).kind == ErrorKind.BULK_LOAD_FAILED


@pytest.mark.asyncio
async def test_bulk_load_and_chat_list(remote, http):
    http.request.return_value = response(200, {
        "viewer": {"id": 1, "username": "alice"},
        "chats": [{"id": 2, "chat_type": "group", "name": "Team"}],
        "messages": {"2": [MESSAGE]},
    })

    bulk = (await remote.bulk_load(1)).value

    assert bulk.viewer.username == "alice"
    assert bulk.messages[2][0].text == "hi"
    assert http.request.call_args.kwargs["params"] == {"viewer_id": 1}

    http.request.return_value = response(200, [{"id": 2}, {"id": 3}])
    assert [chat.id for chat in (await remote.load_chats(1)).value] == [2, 3]

    http.request.return_value = response(200, [{"name": "no id"}])
    assert (await remote.load_chats(1)).kind == ErrorKind.BULK_LOAD_FAILED


class FakeWebsocket:
    """Answers subscribe frames through the channel's own dispatcher."""

    def __init__(self, channel, reply="subscribed"):
        self.channel = channel
        self.reply = reply
        self.sent = []
        self.close = AsyncMock()

    async def send(self, text):
        frame = json.loads(text)
        self.sent.append(frame)
        if frame["action"] == "subscribe":
            key = frame["data"]["key"]
            if self.reply == "subscribed":
                await self.channel._dispatch(json.dumps({"type": "subscribed", "key": key}))
            else:
                await self.channel._dispatch(json.dumps({"type": "error", "key": key, "message": "refused"}))


@pytest.fixture
def channel():
    channel = PushChannel("ws://store.test/changes", viewer_id=1, ack_timeout=1)
    channel._websocket = FakeWebsocket(channel)
    return channel


@pytest.mark.asyncio
async def test_subscribe_waits_for_ack_and_routes_changes(channel):
    events = []

    await channel.subscribe("sub-1", Resource.MESSAGES, {"chat_id": [2]}, events.append, None)
    await channel._dispatch(json.dumps({"type": "change", "key": "sub-1", "data": {"kind": "insert"}}))
    await channel._dispatch(json.dumps({"type": "change", "key": "sub-9", "data": {"kind": "insert"}}))
    await channel._dispatch("not json")

    assert channel._websocket.sent[0] == {
        "action": "subscribe",
        "data": {"key": "sub-1", "resource": "messages", "filter": {"chat_id": [2]}},
    }
    assert events == [{"kind": "insert"}]


@pytest.mark.asyncio
async def test_refused_subscription_raises(channel):
    channel._websocket.reply = "error"

    with pytest.raises(RuntimeError, match="refused"):
        await channel.subscribe("sub-1", Resource.CHATS, None, MagicMock(), None)

    assert channel._handlers == {}


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(channel):
    events = []
    await channel.subscribe("sub-1", Resource.MESSAGES, None, events.append, None)

    await channel.unsubscribe("sub-1")
    await channel._dispatch(json.dumps({"type": "change", "key": "sub-1", "data": {}}))

    assert channel._websocket.sent[-1] == {"action": "unsubscribe", "data": {"key": "sub-1"}}
    assert events == []


@pytest.mark.asyncio
async def test_connection_loss_reports_to_every_subscription(channel):
    errors = []
    await channel.subscribe("sub-1", Resource.MESSAGES, None, MagicMock(), errors.append)
    await channel.subscribe("sub-2", Resource.CHATS, None, MagicMock(), errors.append)

    await channel._fail(ConnectionError("lost"))

    assert len(errors) == 2
    assert channel._handlers == {}


@pytest.mark.asyncio
async def test_remote_subscription_close_unsubscribes(remote):
    remote.push._websocket = FakeWebsocket(remote.push)

    subscription = await remote.subscribe(Resource.NOTIFICATIONS, {"user_id": 1}, MagicMock())
    await subscription.close()

    assert [frame["action"] for frame in remote.push._websocket.sent] == ["subscribe", "unsubscribe"]
    assert subscription.key == "sub-1"


@pytest.mark.asyncio
async def test_load_messages(remote, http):
    http.request.return_value = response(200, [MESSAGE])

    result = await remote.load_messages(1, 2)

    assert [message.id for message in result.value] == [5]
    assert http.request.call_args.args == ("GET", "http://store.test/api/v1/sync/chats/2/messages")
    assert http.request.call_args.kwargs["params"] == {"viewer_id": 1}

    http.request.return_value = response(403, {"detail": {"kind": "not_allowed", "message": "No access to this chat"}})
    assert (await remote.load_messages(1, 2)).kind == ErrorKind.NOT_ALLOWED


class IdleWebsocket:
    """Stays open until closed."""

    def __init__(self):
        self.closed = asyncio.Event()
        self.close = AsyncMock(side_effect=self.closed.set)

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self.closed.wait()
        raise StopAsyncIteration


@pytest.mark.asyncio
async def test_concurrent_connects_open_one_websocket(monkeypatch):
    opened = []

    async def connect(url):
        await asyncio.sleep(0)
        opened.append(IdleWebsocket())
        return opened[-1]

    monkeypatch.setattr(websockets, "connect", connect)
    channel = PushChannel("ws://store.test/changes", viewer_id=1)

    await asyncio.gather(channel.connect(), channel.connect())

    assert len(opened) == 1
    assert channel.connected
    await channel.close()
    opened[0].close.assert_awaited_once()
