from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder

from chatsync.result import Err, ErrorKind
from chatsync.schemas.chat import Chat
from chatsync.schemas.message import Message
from chatsync.schemas.sync import BulkLoad, WriteRequest, WriteResponse
from chatsync.store.base import MessageStoreService

router = APIRouter()

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
}


def get_store(request: Request) -> MessageStoreService:
    return request.app.state.store


def raise_for_error(result) -> None:
    if isinstance(result, Err):
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.kind, status.HTTP_400_BAD_REQUEST),
            detail={"kind": result.kind.value, "message": result.message},
        )


@router.get("/bulk", response_model=BulkLoad)
async def bulk_load(viewer_id: int, store: MessageStoreService = Depends(get_store)):
    """Everything a client needs to start a session"""
    result = await store.bulk_load(viewer_id)
    raise_for_error(result)
    return result.value


@router.get("/chats", response_model=List[Chat])
async def load_chats(viewer_id: int, store: MessageStoreService = Depends(get_store)):
    result = await store.load_chats(viewer_id)
    raise_for_error(result)
    return result.value


@router.get("/chats/{chat_id}/messages", response_model=List[Message])
async def load_messages(chat_id: int, viewer_id: int, store: MessageStoreService = Depends(get_store)):
    result = await store.load_messages(viewer_id, chat_id)
    raise_for_error(result)
    return result.value


@router.post("/write", response_model=WriteResponse)
async def write(request: WriteRequest, store: MessageStoreService = Depends(get_store)):
    """Perform one write; the committed change is also pushed to subscribers"""
    result = await store.write(request.kind, request.payload)
    raise_for_error(result)
    return WriteResponse(ok=True, record=jsonable_encoder(result.value))
