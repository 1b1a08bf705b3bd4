from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatsync.main import create_app


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(database_url=f"sqlite+aiosqlite:///{tmp_path / 'server.db'}")) as client:
        yield client


@pytest.fixture
def world(client):
    store = client.app.state.store
    alice = client.portal.call(store.create_user, "alice", "Alice")
    bob = client.portal.call(store.create_user, "bob", "Bob")
    carol = client.portal.call(store.create_user, "carol")
    chat = client.portal.call(store.create_direct_chat, alice.id, bob.id)
    return SimpleNamespace(alice=alice, bob=bob, carol=carol, chat=chat)


def write(client, kind, **payload):
    return client.post("/api/v1/sync/write", json={"kind": kind, "payload": payload})


def test_root_and_health(client):
    assert client.get("/").json()["version"] == "1.0.0"
    assert client.get("/health").json() == {"status": "ok", "connected_viewers": 0}


def test_bulk_load(client, world):
    write(client, "send", sender_id=world.bob.id, chat_id=world.chat.id, text="hi alice")

    response = client.get("/api/v1/sync/bulk", params={"viewer_id": world.alice.id})

    assert response.status_code == 200
    body = response.json()
    assert body["viewer"]["username"] == "alice"
    assert [chat["unread_count"] for chat in body["chats"]] == [1]
    assert [message["text"] for message in body["messages"][str(world.chat.id)]] == ["hi alice"]


def test_bulk_load_of_unknown_viewer(client):
    response = client.get("/api/v1/sync/bulk", params={"viewer_id": 404})

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "not_found"


def test_write_send(client, world):
    response = write(client, "send", sender_id=world.alice.id, chat_id=world.chat.id, text="hey", client_message_id="t1")

    assert response.status_code == 200
    record = response.json()["record"]
    assert record["text"] == "hey"
    assert record["client_message_id"] == "t1"
    assert record["read_by"] == [world.alice.id]


def test_write_errors(client, world):
    not_member = write(client, "send", sender_id=world.carol.id, chat_id=world.chat.id, text="hey")
    empty = write(client, "send", sender_id=world.alice.id, chat_id=world.chat.id, text="")
    missing = write(client, "edit", user_id=world.alice.id, message_id=999, text="x")
    unknown_kind = write(client, "shout")

    assert not_member.status_code == 403
    assert not_member.json()["detail"] == {"kind": "not_allowed", "message": "No access to this chat"}
    assert empty.status_code == 400
    assert empty.json()["detail"]["kind"] == "invalid"
    assert missing.status_code == 404
    assert unknown_kind.status_code == 422


def test_chat_list(client, world):
    response = client.get("/api/v1/sync/chats", params={"viewer_id": world.bob.id})

    assert [chat["id"] for chat in response.json()] == [world.chat.id]
    assert {participant["username"] for participant in response.json()[0]["participants"]} == {"alice", "bob"}


def test_chat_history(client, world):
    write(client, "send", sender_id=world.bob.id, chat_id=world.chat.id, text="hi")

    response = client.get(f"/api/v1/sync/chats/{world.chat.id}/messages", params={"viewer_id": world.alice.id})
    outsider = client.get(f"/api/v1/sync/chats/{world.chat.id}/messages", params={"viewer_id": world.carol.id})

    assert [message["text"] for message in response.json()] == ["hi"]
    assert outsider.status_code == 403


def test_websocket_requires_viewer(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/v1/ws/changes"):
            pass


def test_websocket_pushes_subscribed_changes(client, world):
    with client.websocket_connect(f"/api/v1/ws/changes?viewer_id={world.alice.id}") as websocket:
        websocket.send_json({
            "action": "subscribe",
            "data": {"key": "sub-1", "resource": "messages", "filter": {"chat_id": [world.chat.id]}},
        })
        assert websocket.receive_json() == {"type": "subscribed", "key": "sub-1"}
        assert client.get("/health").json()["connected_viewers"] == 1

        record = write(client, "send", sender_id=world.bob.id, chat_id=world.chat.id, text="ping").json()["record"]

        frame = websocket.receive_json()
        assert frame["type"] == "change"
        assert frame["key"] == "sub-1"
        assert frame["data"]["kind"] == "insert"
        assert frame["data"]["record"]["id"] == record["id"]

        websocket.send_json({"action": "unsubscribe", "data": {"key": "sub-1"}})
        websocket.send_json({"action": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_rejects_bad_frames(client, world):
    with client.websocket_connect(f"/api/v1/ws/changes?viewer_id={world.alice.id}") as websocket:
        websocket.send_text("{not json")
        assert websocket.receive_json() == {"type": "error", "message": "Invalid JSON format"}

        websocket.send_json({"action": "subscribe", "data": {"key": "sub-1", "resource": "typing"}})
        error = websocket.receive_json()
        assert error["type"] == "error"
        assert error["key"] == "sub-1"

        websocket.send_json({"action": "dance"})
        assert websocket.receive_json()["message"] == "Unknown action: dance"
