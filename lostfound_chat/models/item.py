from typing import Literal, Optional, TypedDict


class ItemDocument(TypedDict, total=False):
    _id: str
    user_id: str
    title: str
    item_type: Literal["lost", "found"]
    status: Literal["active", "resolved", "deleted"]
    photo_url: Optional[str]
