from typing import Dict, Iterable, List

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from lostfound_chat.errors import TransportError
from lostfound_chat.models.user import UserDocument
from lostfound_chat.schemas.conversation import UNKNOWN_LABEL


def _as_object_id(user_id: str):
    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError):
        return user_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def resolve_labels(self, user_ids: Iterable[str]) -> Dict[str, str]:
        """
        Display label per user id, in one query.
        - full_name when set
        - otherwise the account email
        - otherwise "Unknown" (also for ids with no user row)
        """
        ids = {uid for uid in user_ids if uid}
        if not ids:
            return {}
        query = {"_id": {"$in": [_as_object_id(uid) for uid in ids]}}
        try:
            docs: List[UserDocument] = await self._collection.find(query, {"full_name": 1, "email": 1}).to_list(length=len(ids))
        except PyMongoError as exc:
            raise TransportError("resolve labels", exc) from exc

        labels = {uid: UNKNOWN_LABEL for uid in ids}
        for doc in docs:
            labels[str(doc["_id"])] = doc.get("full_name") or doc.get("email") or UNKNOWN_LABEL
        return labels
