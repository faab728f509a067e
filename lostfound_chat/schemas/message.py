from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lostfound_chat.models.message import MessageDocument


class Message(BaseModel):
    """One directed message between two users, immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    item_ref: Optional[str] = None
    sender_id: str
    recipient_id: str
    body: str
    created_at: datetime
    read_at: Optional[datetime] = None
    client_message_id: Optional[str] = None

    @field_validator("created_at", "read_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # naive store timestamps are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_document(cls, doc: MessageDocument) -> "Message":
        return cls(
            id=str(doc["_id"]),
            item_ref=doc.get("item_ref"),
            sender_id=doc["sender_id"],
            recipient_id=doc["recipient_id"],
            body=doc["body"],
            created_at=doc["created_at"],
            read_at=doc.get("read_at"),
            client_message_id=doc.get("client_message_id"),
        )


class SendMessageRequest(BaseModel):

    item_ref: Optional[str] = None
    recipient_id: str = Field(min_length=1)
    body: str
    client_message_id: Optional[str] = None
