from typing import Dict, Iterable, List

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from lostfound_chat.errors import TransportError
from lostfound_chat.models.item import ItemDocument


class ItemRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("items")

    async def resolve_titles(self, item_refs: Iterable[str]) -> Dict[str, str]:
        refs = {ref for ref in item_refs if ref}
        if not refs:
            return {}
        keys = []
        for ref in refs:
            try:
                keys.append(ObjectId(ref))
            except (InvalidId, TypeError):
                keys.append(ref)
        try:
            docs: List[ItemDocument] = await self._collection.find({"_id": {"$in": keys}}, {"title": 1}).to_list(length=len(refs))
        except PyMongoError as exc:
            raise TransportError("resolve item titles", exc) from exc
        return {str(doc["_id"]): doc["title"] for doc in docs if doc.get("title")}
