"""
Shared fixtures.

Store-backed tests run against a throwaway sqlite file per test; the pure
component tests use an in-memory Session with two hand-built chats.
"""

import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from chatsync.engine import SyncEngine
from chatsync.schemas.chat import Chat, ChatType, Participant, UserProfile
from chatsync.schemas.message import Message
from chatsync.session import NotificationPermission, Session
from chatsync.store.base import MessageStoreService
from chatsync.store.local import LocalMessageStore

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

VIEWER = UserProfile(id=1, username="alice", display_name="Alice")


@pytest.fixture
def session():
    """Alice's session holding group chat 10 (alice admin, bob) and direct chat 20 (carol)."""
    session = Session(VIEWER, MagicMock(spec=MessageStoreService))
    session.init()
    session.state.chats[10] = Chat(
        id=10,
        chat_type=ChatType.GROUP,
        name="Team",
        created_at=BASE_TIME,
        participants=[
            Participant(chat_id=10, user_id=1, is_admin=True, username="alice", display_name="Alice"),
            Participant(chat_id=10, user_id=2, username="bob", display_name="Bob", avatar_url="/avatars/bob.png"),
        ],
    )
    session.state.chats[20] = Chat(
        id=20,
        chat_type=ChatType.DIRECT,
        created_at=BASE_TIME + timedelta(minutes=1),
        participants=[
            Participant(chat_id=20, user_id=1, is_admin=True, username="alice"),
            Participant(chat_id=20, user_id=3, username="carol"),
        ],
    )
    session.state.messages[10] = []
    session.state.messages[20] = []
    session.state.sort_chats()
    return session


@pytest.fixture
def make_message():
    ids = itertools.count(100)

    def factory(**fields):
        fields.setdefault("id", next(ids))
        fields.setdefault("chat_id", 10)
        fields.setdefault("sender_id", 2)
        fields.setdefault("text", "hello")
        if "timestamp" not in fields:
            offset = fields["id"] if isinstance(fields["id"], int) else 0
            fields["timestamp"] = BASE_TIME + timedelta(seconds=offset)
        return Message(**fields)

    return factory


@pytest_asyncio.fixture
async def store(tmp_path):
    store = LocalMessageStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'chatsync.db'}")
    await store.create_tables()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def seeded(store):
    """alice, bob and carol; a direct chat alice-bob and a group 'Team' created by alice."""
    alice = await store.create_user("alice", "Alice")
    bob = await store.create_user("bob", "Bob", "/avatars/bob.png")
    carol = await store.create_user("carol", "Carol")
    direct = await store.create_direct_chat(alice.id, bob.id)
    group = await store.create_group_chat(alice.id, "Team", [bob.id, carol.id])
    return SimpleNamespace(alice=alice, bob=bob, carol=carol, direct=direct, group=group)


@pytest.fixture
def alerts():
    return []


@pytest_asyncio.fixture
async def engine(store, seeded, alerts):
    """A started SyncEngine for alice with notifications allowed."""
    engine = SyncEngine(store, seeded.alice, notifier=alerts.append)
    engine.set_notification_permission(NotificationPermission.GRANTED)
    result = await engine.start()
    assert result.ok
    yield engine
    await engine.stop()
