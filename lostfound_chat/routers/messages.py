import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from lostfound_chat.errors import MessageValidationError, TransportError
from lostfound_chat.schemas.message import Message, SendMessageRequest
from lostfound_chat.services.chat_service import ChatService
from lostfound_chat.utils.dependencies import get_chat_service, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(payload: SendMessageRequest, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        saved = await service.insert_message(
            payload.item_ref,
            current_user_id,
            payload.recipient_id,
            payload.body,
            client_message_id=payload.client_message_id,
        )
    except MessageValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except TransportError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return {"message": saved.model_dump(mode="json")}


@router.websocket("/ws/{user_id}")
async def insert_events(websocket: WebSocket, user_id: str, service: ChatService = Depends(get_chat_service)):
    # same identity contract as the HTTP routes: the gateway sets X-User-Id
    if websocket.headers.get("x-user-id") != user_id:
        await websocket.close(code=4403)
        return
    await websocket.accept()

    async def forward(message: Message) -> None:
        await websocket.send_text(message.model_dump_json())

    unsubscribe = await service.subscribe_to_inserts(user_id, forward)
    try:
        while True:
            # client frames are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Insert stream for %s closed", user_id)
    finally:
        await unsubscribe()
