from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, computed_field

from lostfound_chat.schemas.message import Message

UNKNOWN_LABEL = "Unknown"


class Conversation(BaseModel):
    """
    Two-party thread as seen by one viewer.

    Never mutated: any change to ``messages`` produces a new instance, so
    identity comparison is a valid "did this thread change" signal.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    counterpart_id: str
    counterpart_label: str
    messages: Tuple[Message, ...]
    item_ref: Optional[str] = None
    item_title: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def last_message(self) -> Message:
        return self.messages[-1]
