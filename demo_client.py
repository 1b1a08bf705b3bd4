#!/usr/bin/env python3

import argparse
import asyncio
import logging

from chatsync.config import settings
from chatsync.engine import SyncEngine
from chatsync.logging_config import setup_logging
from chatsync.schemas.chat import UserProfile
from chatsync.session import NotificationPermission
from chatsync.store.remote import RemoteMessageStore

logger = logging.getLogger("demo_client")


def print_alert(alert):
    print(f"[notification] {alert.title}: {alert.body}")


async def run(viewer_id: int, chat_id: int, text: str, listen: float):
    store = RemoteMessageStore(viewer_id, base_url=settings.STORE_URL, ws_url=settings.STORE_WS_URL)
    engine = SyncEngine(store, UserProfile(id=viewer_id, username=f"user-{viewer_id}"), notifier=print_alert)
    engine.errors.add_listener(lambda error: print(f"[error] {error}"))
    engine.set_notification_permission(NotificationPermission.GRANTED)

    try:
        started = await engine.start()
        if not started.ok:
            print(f"Could not start: {started}")
            return

        print(f"Signed in as {engine.session.viewer.name}")
        for chat in engine.chats():
            name = chat.name or f"Chat #{chat.id}"
            print(f"  - {name} (ID: {chat.id}) unread={chat.unread_count} last={chat.last_message_content!r}")

        target = chat_id or (engine.chats()[0].id if engine.chats() else None)
        if target and text:
            result = await engine.send(target, text)
            print(f"Sent: {result}")

        print(f"Listening for {listen:.0f}s...")
        await asyncio.sleep(listen)
        if target:
            for message in engine.messages(target)[-5:]:
                print(f"  [{message.timestamp:%H:%M}] {message.sender_id}: {message.text}")
    finally:
        await engine.stop()
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="Run a sync engine against a chatsync store server")
    parser.add_argument("--viewer", type=int, required=True)
    parser.add_argument("--chat", type=int, default=0)
    parser.add_argument("--text", default="Test message from Python client")
    parser.add_argument("--listen", type=float, default=5.0)
    args = parser.parse_args()

    setup_logging()
    asyncio.run(run(args.viewer, args.chat, args.text, args.listen))


if __name__ == "__main__":
    main()
