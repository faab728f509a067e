import logging
from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from lostfound_chat.errors import TransportError
from lostfound_chat.models.message import MessageDocument
from lostfound_chat.schemas.message import Message

logger = logging.getLogger(__name__)

# bounded history per user
MAX_HISTORY = 5000


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("recipient_id", ASCENDING), ("created_at", DESCENDING)])

    async def save_message(
        self,
        item_ref: Optional[str],
        sender_id: str,
        recipient_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        doc: MessageDocument = {
            "item_ref": item_ref,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "body": body,
            "created_at": datetime.now(timezone.utc),
            "read_at": None,
            "client_message_id": client_message_id,
        }
        try:
            result = await self.collection.insert_one(doc)
        except PyMongoError as exc:
            raise TransportError("insert message", exc) from exc
        doc["_id"] = str(result.inserted_id)
        return Message.from_document(doc)

    async def get_for_participant(self, user_id: str, limit: int = MAX_HISTORY) -> List[Message]:
        query = {"$or": [{"sender_id": user_id}, {"recipient_id": user_id}]}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        try:
            cur = self.collection.find(query).sort(sort).limit(limit)
            items = await cur.to_list(length=limit)
        except PyMongoError as exc:
            raise TransportError("fetch messages", exc) from exc
        if len(items) >= limit:
            logger.warning("History for %s truncated at %d messages", user_id, limit)
        return [Message.from_document(it) for it in items]
