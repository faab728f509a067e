from fastapi import APIRouter, Depends, HTTPException, status

from lostfound_chat.errors import TransportError
from lostfound_chat.services.chat_service import ChatService
from lostfound_chat.utils.dependencies import get_chat_service, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        conversations = await service.list_conversations(current_user_id)
    except TransportError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return {"conversations": [c.model_dump(mode="json") for c in conversations]}
