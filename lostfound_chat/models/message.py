from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    # related listing
    item_ref: Optional[str]
    sender_id: str
    recipient_id: str
    body: str
    created_at: datetime
    read_at: Optional[datetime]
    # placeholder id of the optimistic send that produced this row
    client_message_id: Optional[str]
