from typing import Optional, Sequence, Union

from lostfound_chat.schemas.conversation import Conversation
from lostfound_chat.services.reconciliation import EngineState


class SelectionController:
    """
    Which thread is open for the viewer.

    Only the counterpart id is kept. The open thread is looked up again in
    every new snapshot, so it follows merges and refreshes that replace the
    Conversation object.
    """

    def __init__(self, active_counterpart_id: Optional[str] = None) -> None:
        self._active_counterpart_id = active_counterpart_id

    @property
    def active_counterpart_id(self) -> Optional[str]:
        return self._active_counterpart_id

    def select(self, counterpart_id: str) -> bool:
        if counterpart_id == self._active_counterpart_id:
            return False
        self._active_counterpart_id = counterpart_id
        return True

    def clear(self) -> None:
        self._active_counterpart_id = None

    def current_conversation(
        self, source: Union[EngineState, Sequence[Conversation]]
    ) -> Optional[Conversation]:
        if self._active_counterpart_id is None:
            return None
        if isinstance(source, EngineState):
            return source.get(self._active_counterpart_id)
        for conversation in source:
            if conversation.counterpart_id == self._active_counterpart_id:
                return conversation
        return None
