import json
import logging
from functools import partial
from typing import Dict, List

from fastapi import WebSocket

from chatsync.schemas.events import Resource
from chatsync.schemas.sync import SubscribeRequest
from chatsync.store.base import MessageStoreService, RawEvent, StoreSubscription

logger = logging.getLogger(__name__)


class ClientConnection:
    """One websocket and the store subscriptions it asked for."""

    def __init__(self, websocket: WebSocket, viewer_id: int):
        self.websocket = websocket
        self.viewer_id = viewer_id
        self.subscriptions: Dict[str, StoreSubscription] = {}
        self.closed = False

    async def send_json(self, frame: dict) -> None:
        await self.websocket.send_text(json.dumps(frame))


class ConnectionManager:
    def __init__(self, store: MessageStoreService):
        self.store = store
        self.active_connections: Dict[int, List[ClientConnection]] = {}

    async def connect(self, websocket: WebSocket, viewer_id: int) -> ClientConnection:
        await websocket.accept()
        connection = ClientConnection(websocket, viewer_id)
        self.active_connections.setdefault(viewer_id, []).append(connection)
        logger.info("Viewer %s connected (%s connections)", viewer_id, len(self.active_connections[viewer_id]))
        return connection

    async def disconnect(self, connection: ClientConnection) -> None:
        connection.closed = True
        for key in list(connection.subscriptions):
            await self.unsubscribe(connection, key)

        connections = self.active_connections.get(connection.viewer_id)
        if connections and connection in connections:
            connections.remove(connection)
            if not connections:
                del self.active_connections[connection.viewer_id]
        logger.info("Viewer %s disconnected", connection.viewer_id)

    async def subscribe(self, connection: ClientConnection, request: SubscribeRequest) -> None:
        if request.key in connection.subscriptions:
            await self.unsubscribe(connection, request.key)

        subscription = await self.store.subscribe(
            Resource(request.resource),
            request.filter,
            partial(self._forward, connection, request.key),
        )
        connection.subscriptions[request.key] = subscription
        await connection.send_json({"type": "subscribed", "key": request.key})

    async def unsubscribe(self, connection: ClientConnection, key: str) -> bool:
        subscription = connection.subscriptions.pop(key, None)
        if subscription is None:
            return False
        await subscription.close()
        return True

    async def _forward(self, connection: ClientConnection, key: str, raw: RawEvent) -> None:
        if connection.closed:
            return
        try:
            await connection.send_json({"type": "change", "key": key, "data": raw})
        except Exception as exc:
            logger.warning("Dropping connection of viewer %s: %s", connection.viewer_id, exc)
            await self.disconnect(connection)

    def get_connected_users(self) -> List[int]:
        return list(self.active_connections.keys())

    async def close_all(self) -> None:
        for connections in list(self.active_connections.values()):
            for connection in list(connections):
                await self.disconnect(connection)
