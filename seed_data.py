#!/usr/bin/env python3

import asyncio
import logging
import sys

from chatsync.config import settings
from chatsync.logging_config import setup_logging
from chatsync.schemas.chat import ChatType
from chatsync.schemas.social import RelationshipKind
from chatsync.schemas.sync import WriteKind
from chatsync.store.local import LocalMessageStore

logger = logging.getLogger("seed_data")

USERS = [
    {"username": "alice", "display_name": "Alice"},
    {"username": "bob", "display_name": "Bob"},
    {"username": "charlie", "display_name": "Charlie"},
    {"username": "diana", "display_name": "Diana"},
    {"username": "eve", "display_name": "Eve"},
]


async def create_users(store):
    users = []
    for user_data in USERS:
        user = await store.find_user(user_data["username"])
        if user:
            print(f"User {user.username} exists (ID: {user.id})")
        else:
            user = await store.create_user(**user_data)
            print(f"Created user: {user.username} (ID: {user.id})")
        users.append(user)
    return users


async def create_chats(store, users):
    direct_chat = await store.create_direct_chat(users[0].id, users[1].id)
    print(f"Created direct chat between {users[0].username} and {users[1].username} (ID: {direct_chat.id})")

    group_chat = await store.create_group_chat(
        users[0].id,
        "Test Group",
        [users[1].id, users[2].id, users[3].id]
    )
    print(f"Created group chat '{group_chat.name}' (ID: {group_chat.id})")

    channel = await store.create_group_chat(
        users[2].id,
        "Announcements",
        [user.id for user in users],
        chat_type=ChatType.CHANNEL,
        description="Read-only news",
    )
    print(f"Created channel '{channel.name}' (ID: {channel.id})")

    return [direct_chat, group_chat, channel]


async def create_messages(store, users, chats):
    messages_data = [
        (chats[0], users[0], "Hey Bob! How's it going?"),
        (chats[0], users[1], "Hi Alice! All good, thanks!"),
        (chats[0], users[0], "Great! Ready to work on the project?"),
        (chats[1], users[0], "Welcome to our test group!"),
        (chats[1], users[1], "Thanks for the invitation!"),
        (chats[1], users[2], "Hey @everyone! Glad to be here"),
        (chats[1], users[3], "Let's discuss the work plan, @alice"),
        (chats[2], users[2], "First announcement"),
    ]

    created = 0
    for chat, sender, text in messages_data:
        result = await store.write(WriteKind.SEND, {"sender_id": sender.id, "chat_id": chat.id, "text": text})
        if not result.ok:
            logger.error("Could not seed message in chat %s: %s", chat.id, result)
            continue
        created += 1
        print(f"Created message from {sender.username} in chat {chat.id}: '{text[:30]}...'")
    return created


async def main(database_url=None):
    setup_logging()
    store = LocalMessageStore.from_url(database_url or settings.DATABASE_URL)
    print(f"Seeding {database_url or settings.DATABASE_URL}...\n")

    try:
        await store.create_tables()
        users = await create_users(store)
        chats = await create_chats(store, users)
        count = await create_messages(store, users, chats)

        await store.create_relationship(RelationshipKind.BLOCK, users[0].id, users[4].id, reason="spam")
        await store.create_relationship(RelationshipKind.DM_REQUEST, users[4].id, users[1].id, reason="Hi Bob!")
        await store.create_notification(users[0].id, "Welcome", "Your account is ready")

        print(f"\nCreated {len(users)} users, {len(chats)} chats, {count} messages")
        print("\nStore server: uvicorn chatsync.main:app --reload")
        print(f"Demo client:  python demo_client.py --viewer {users[1].id}")
    finally:
        await store.close()


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
    except Exception:
        logger.exception("Error creating seed data")
        sys.exit(1)
