from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from lostfound_chat.database.connection import mongo_db_dependency
from lostfound_chat.repositories.item_repository import ItemRepository
from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.repositories.user_repository import UserRepository
from lostfound_chat.services.chat_service import ChatService
from lostfound_chat.services.thread_projector import ThreadProjector
from lostfound_chat.utils.realtime_bus import get_bus


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # token verification happens at the gateway; it forwards the user id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    projector = ThreadProjector(UserRepository(db), ItemRepository(db))
    return ChatService(MessageRepository(db), get_bus(), projector)
