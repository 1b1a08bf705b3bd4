import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatsync.schemas.sync import SubscribeRequest, UnsubscribeRequest
from chatsync.websocket_manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/changes")
async def websocket_changes(websocket: WebSocket, viewer_id: Optional[int] = None):
    if viewer_id is None:
        await websocket.close(code=1008, reason="viewer_id required")
        return

    manager: ConnectionManager = websocket.app.state.connections
    connection = await manager.connect(websocket, viewer_id)

    try:
        while True:
            data = await websocket.receive_text()
            payload = {}

            try:
                frame = json.loads(data)
                action = frame.get("action")
                payload = frame.get("data") or {}
                await handle_client_frame(manager, connection, action, payload)
            except json.JSONDecodeError:
                await connection.send_json({
                    "type": "error",
                    "message": "Invalid JSON format"
                })
            except (ValidationError, ValueError, AttributeError) as e:
                await connection.send_json({
                    "type": "error",
                    "key": payload.get("key") if isinstance(payload, dict) else None,
                    "message": f"Error processing message: {str(e)}"
                })

    except WebSocketDisconnect:
        await manager.disconnect(connection)


async def handle_client_frame(manager: ConnectionManager, connection: ClientConnection, action: str, payload: dict):

    if action == "subscribe":
        await manager.subscribe(connection, SubscribeRequest(**payload))

    elif action == "unsubscribe":
        request = UnsubscribeRequest(**payload)
        await manager.unsubscribe(connection, request.key)

    elif action == "ping":
        await connection.send_json({"type": "pong"})

    else:
        await connection.send_json({
            "type": "error",
            "message": f"Unknown action: {action}"
        })
