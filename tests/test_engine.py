from unittest.mock import AsyncMock

import pytest

from chatsync.engine import SyncEngine
from chatsync.reconciliation import ApplyOutcome
from chatsync.result import Err, ErrorKind
from chatsync.schemas.chat import UserProfile
from chatsync.schemas.events import ChangeKind, Resource
from chatsync.schemas.message import MessageCreate
from chatsync.schemas.social import RelationshipKind
from chatsync.schemas.sync import WriteKind

SESSION_CHANNELS = ["chats", "messages", "notifications", "participants", "relationships"]


async def send_as(store, user, chat_id, text="hello"):
    result = await store.write(WriteKind.SEND, {"sender_id": user.id, "chat_id": chat_id, "text": text})
    assert result.ok
    return result.value


def texts(engine, chat_id):
    return [message.text for message in engine.messages(chat_id)]


@pytest.mark.asyncio
async def test_start_loads_state_and_opens_channels(engine, store, seeded):
    assert sorted(engine.subscriptions.open_keys) == SESSION_CHANNELS
    assert store.feed.subscriber_count == 5
    assert {chat.id for chat in engine.chats()} == {seeded.direct.id, seeded.group.id}
    assert engine.subscriptions.filter_of("messages") == {"chat_id": sorted([seeded.direct.id, seeded.group.id])}
    # a second start is a no-op
    assert (await engine.start()).value is False
    assert store.feed.subscriber_count == 5


@pytest.mark.asyncio
async def test_failed_bulk_load_tears_the_session_down(store):
    engine = SyncEngine(store, UserProfile(id=999, username="ghost"))

    result = await engine.start()

    assert result.kind == ErrorKind.BULK_LOAD_FAILED
    assert not engine.is_running
    assert engine.subscriptions.open_keys == []
    assert store.feed.subscriber_count == 0
    assert list(engine.errors.history) == [result]


@pytest.mark.asyncio
async def test_send_when_echo_arrives_before_confirmation(engine, seeded):
    result = await engine.send(seeded.direct.id, "hello")

    messages = engine.messages(seeded.direct.id)
    assert result.ok
    assert [message.id for message in messages] == [result.value.id]
    assert not messages[0].is_pending
    assert len(engine.tracker) == 0
    assert engine.chat(seeded.direct.id).last_message_content == "hello"


@pytest.mark.asyncio
async def test_send_when_confirmation_arrives_before_echo(engine, store, seeded):
    store.feed.hold()
    result = await engine.send(seeded.direct.id, "hello")

    assert [message.id for message in engine.messages(seeded.direct.id)] == [result.value.id]

    assert await store.feed.release() == 1
    assert [message.id for message in engine.messages(seeded.direct.id)] == [result.value.id]
    assert engine.unread_count(seeded.direct.id) == 0


@pytest.mark.asyncio
async def test_returned_records_do_not_alias_engine_state(engine, store, seeded):
    store.feed.hold()
    sent = await engine.send(seeded.direct.id, "hello")
    await store.feed.release()
    original = await send_as(store, seeded.bob, seeded.direct.id, "pass it on")
    forwarded = await engine.forward(original.id, [seeded.group.id])

    sent.value.text = "tampered"
    forwarded.value[0].text = "tampered"

    assert texts(engine, seeded.direct.id) == ["hello", "pass it on"]
    assert texts(engine, seeded.group.id) == ["Forwarded from **Bob**\npass it on"]


@pytest.mark.asyncio
async def test_failed_send_is_rolled_back(engine, store, seeded, monkeypatch):
    failure = Err(ErrorKind.WRITE_FAILED, "store unavailable")
    monkeypatch.setattr(store, "write", AsyncMock(return_value=failure))

    result = await engine.send(seeded.direct.id, "lost")

    assert result == failure
    assert engine.messages(seeded.direct.id) == []
    assert len(engine.tracker) == 0
    assert engine.unread_count(seeded.direct.id) == 0
    assert engine.chat(seeded.direct.id).last_message_content is None
    assert list(engine.errors.history) == [failure]


@pytest.mark.asyncio
async def test_send_rejects_empty_and_unknown_chat(engine, seeded):
    assert (await engine.send(seeded.direct.id, "   ")).kind == ErrorKind.INVALID
    assert (await engine.send(999, "hi")).kind == ErrorKind.NOT_FOUND
    assert engine.messages(seeded.direct.id) == []


@pytest.mark.asyncio
async def test_unread_follows_focus_rules(engine, store, seeded, alerts):
    group_id = seeded.group.id

    await send_as(store, seeded.bob, group_id, "one")
    await send_as(store, seeded.carol, group_id, "two")
    await send_as(store, seeded.alice, group_id, "own")
    assert engine.unread_count(group_id) == 2

    await engine.open_chat(group_id)
    assert engine.unread_count(group_id) == 0

    await send_as(store, seeded.bob, group_id, "while reading")
    assert engine.unread_count(group_id) == 0

    await engine.set_window_focus(False)
    await send_as(store, seeded.bob, group_id, "while away")
    assert engine.unread_count(group_id) == 1

    await engine.set_window_focus(True)
    assert engine.unread_count(group_id) == 0

    engine.close_chat()
    await send_as(store, seeded.bob, group_id, "after closing")
    assert engine.unread_count(group_id) == 1

    assert [alert.body for alert in alerts] == ["one", "two", "while away", "after closing"]
    # the store agrees with the local counters
    chats = (await store.load_chats(seeded.alice.id)).value
    assert next(chat for chat in chats if chat.id == group_id).unread_count == 1


@pytest.mark.asyncio
async def test_mentions(engine, store, seeded):
    await send_as(store, seeded.bob, seeded.group.id, "hi all")
    mention = await send_as(store, seeded.bob, seeded.group.id, "@Alice can you check?")

    assert engine.has_mention(seeded.group.id)
    assert engine.first_unread_mention(seeded.group.id) == mention.id

    await engine.mark_read(seeded.group.id)

    assert not engine.has_mention(seeded.group.id)


@pytest.mark.asyncio
async def test_republished_insert_is_not_counted_twice(engine, store, seeded, alerts):
    message = await send_as(store, seeded.bob, seeded.direct.id, "ping")

    await store.feed.publish(Resource.MESSAGES, ChangeKind.INSERT, message.model_dump(mode="json"))

    assert [m.id for m in engine.messages(seeded.direct.id)] == [message.id]
    assert engine.unread_count(seeded.direct.id) == 1
    assert len(alerts) == 1


@pytest.mark.asyncio
async def test_remote_delete_keeps_position(engine, store, seeded):
    group_id = seeded.group.id
    messages = [await send_as(store, seeded.bob, group_id, text) for text in ("a", "b", "c")]
    assert (await engine.react(messages[1].id, "👍")).ok
    assert engine.messages(group_id)[1].reactions == {"👍": {seeded.alice.id}}

    await store.write(WriteKind.DELETE, {"user_id": seeded.bob.id, "message_id": messages[1].id})

    deleted = engine.messages(group_id)[1]
    assert [m.id for m in engine.messages(group_id)] == [m.id for m in messages]
    assert deleted.text == store.settings.DELETED_MESSAGE_MARKER
    assert deleted.reactions == {}


@pytest.mark.asyncio
async def test_delete_is_reverted_when_the_store_refuses(engine, store, seeded, monkeypatch):
    message = (await engine.send(seeded.direct.id, "oops")).value
    monkeypatch.setattr(store, "write", AsyncMock(return_value=Err(ErrorKind.WRITE_FAILED, "down")))

    result = await engine.delete(message.id)

    assert result.kind == ErrorKind.WRITE_FAILED
    assert texts(engine, seeded.direct.id) == ["oops"]


@pytest.mark.asyncio
async def test_delete_for_everyone(engine, seeded):
    message = (await engine.send(seeded.direct.id, "regret")).value

    assert (await engine.delete(message.id)).ok
    assert texts(engine, seeded.direct.id) == [engine.session.settings.DELETED_MESSAGE_MARKER]


@pytest.mark.asyncio
async def test_edit_and_star(engine, store, seeded):
    own = (await engine.send(seeded.group.id, "draft")).value
    foreign = await send_as(store, seeded.bob, seeded.group.id, "bob's")

    assert (await engine.edit(own.id, "final")).ok
    assert (await engine.edit(foreign.id, "hijack")).kind == ErrorKind.NOT_ALLOWED
    assert (await engine.star(foreign.id)).ok

    messages = engine.messages(seeded.group.id)
    assert messages[0].text == "final" and messages[0].is_edited
    assert messages[1].is_starred


@pytest.mark.asyncio
async def test_pending_messages_cannot_be_changed(engine, seeded):
    temp_id = engine.tracker.begin_send(MessageCreate(chat_id=seeded.direct.id, text="in flight"))

    assert (await engine.react(temp_id, "👍")).kind == ErrorKind.INVALID
    assert (await engine.edit(temp_id, "x")).kind == ErrorKind.INVALID
    assert (await engine.react(12345, "👍")).kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_pin_announces_itself(engine, store, seeded):
    message = await send_as(store, seeded.bob, seeded.group.id, "important")

    result = await engine.pin(message.id)

    assert result.value.is_pinned
    messages = engine.messages(seeded.group.id)
    assert messages[0].is_pinned
    assert messages[-1].text == "[[SYS:📌 Alice pinned a message.]]"
    assert messages[-1].sender_id == seeded.alice.id


@pytest.mark.asyncio
async def test_only_admins_pin_in_groups(engine, store, seeded):
    message = await send_as(store, seeded.alice, seeded.group.id, "rules")
    bob = SyncEngine(store, seeded.bob)
    assert (await bob.start()).ok

    try:
        result = await bob.pin(message.id)
        assert result.kind == ErrorKind.NOT_ALLOWED
        assert (await bob.purge(seeded.group.id, message.id)).kind == ErrorKind.NOT_ALLOWED
    finally:
        await bob.stop()


@pytest.mark.asyncio
async def test_forward(engine, store, seeded):
    original = await send_as(store, seeded.bob, seeded.direct.id, "look at this")

    result = await engine.forward(original.id, [seeded.group.id])

    assert result.ok
    assert [record.chat_id for record in result.value] == [seeded.group.id]
    assert texts(engine, seeded.group.id) == ["Forwarded from **Bob**\nlook at this"]


@pytest.mark.asyncio
async def test_forward_reports_partial_failure(engine, store, seeded):
    original = await send_as(store, seeded.bob, seeded.direct.id, "look")
    stranger = await store.create_user("dave")
    foreign = await store.create_direct_chat(stranger.id, seeded.bob.id)

    result = await engine.forward(original.id, [seeded.group.id, foreign.id])

    assert result.kind == ErrorKind.WRITE_FAILED
    assert len(engine.messages(seeded.group.id)) == 1


@pytest.mark.asyncio
async def test_leave_chat(engine, seeded):
    await engine.open_chat(seeded.group.id)

    assert (await engine.leave_chat(seeded.group.id)).ok

    assert [chat.id for chat in engine.chats()] == [seeded.direct.id]
    assert engine.session.open_chat_id is None
    assert engine.subscriptions.filter_of("messages") == {"chat_id": [seeded.direct.id]}


@pytest.mark.asyncio
async def test_added_to_new_group(engine, store, seeded):
    new = await store.create_group_chat(seeded.bob.id, "Side project", [seeded.alice.id])

    assert new.id in {chat.id for chat in engine.chats()}
    assert new.id in engine.subscriptions.filter_of("messages")["chat_id"]

    await send_as(store, seeded.bob, new.id, "welcome")
    assert engine.unread_count(new.id) == 1


@pytest.mark.asyncio
async def test_joining_a_chat_loads_its_history(engine, store, seeded):
    side = await store.create_group_chat(seeded.bob.id, "Side project", [seeded.carol.id])
    await send_as(store, seeded.bob, side.id, "before you joined")

    assert await store.add_member(side.id, seeded.alice.id) is not None

    assert texts(engine, side.id) == ["before you joined"]
    assert engine.chat(side.id).last_message_content == "before you joined"

    await send_as(store, seeded.carol, side.id, "welcome")
    assert texts(engine, side.id) == ["before you joined", "welcome"]


@pytest.mark.asyncio
async def test_remote_chat_delete(engine, store, seeded):
    await engine.open_chat(seeded.direct.id)

    assert await store.delete_chat(seeded.direct.id)

    assert engine.chat(seeded.direct.id) is None
    assert engine.session.open_chat_id is None
    assert engine.subscriptions.filter_of("chats") == {"id": [seeded.group.id]}


@pytest.mark.asyncio
async def test_stop_tears_down_and_restart_resubscribes(engine, store, seeded):
    await engine.stop()

    assert store.feed.subscriber_count == 0
    await send_as(store, seeded.bob, seeded.direct.id, "nobody home")
    assert engine.chats() == []

    assert (await engine.start()).ok
    assert store.feed.subscriber_count == 5
    assert texts(engine, seeded.direct.id) == ["nobody home"]
    assert engine.unread_count(seeded.direct.id) == 1


@pytest.mark.asyncio
async def test_purge(engine, store, seeded):
    message = await send_as(store, seeded.bob, seeded.group.id)

    assert (await engine.purge(seeded.group.id, message.id)).value == ApplyOutcome.REMOVED
    assert engine.messages(seeded.group.id) == []
    assert (await engine.purge(seeded.group.id, message.id)).kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_snapshots_are_copies(engine, seeded):
    engine.chats()[0].name = "changed"
    engine.chat(seeded.group.id).participants.clear()

    assert all(chat.name != "changed" for chat in engine.chats())
    assert len(engine.chat(seeded.group.id).participants) == 3


@pytest.mark.asyncio
async def test_relationships_and_notifications_stream_in(engine, store, seeded):
    await store.create_relationship(RelationshipKind.BLOCK, seeded.alice.id, seeded.carol.id)
    await store.create_relationship(RelationshipKind.BLOCK, seeded.bob.id, seeded.alice.id)
    await store.create_notification(seeded.alice.id, "first")
    await store.create_notification(seeded.alice.id, "second")
    await store.create_notification(seeded.bob.id, "not mine")

    assert engine.blocked_user_ids() == {seeded.carol.id}
    assert len(engine.relationships()) == 2
    assert [notification.title for notification in engine.notifications()] == ["second", "first"]
