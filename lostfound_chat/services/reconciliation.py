"""
In-memory reconciliation of conversation threads.

State lives in an immutable ``EngineState`` snapshot. Every change is a pure
function of (state, event) -> state:

- ``rebase``          bulk refresh (cold load or poll)
- ``merge_message``   realtime insert event
- ``add_pending``     optimistic local send
- ``confirm_pending`` store accepted the send
- ``drop_pending``    store rejected the send

``ReconciliationEngine`` wraps those with the label lookups they need and
swaps the current snapshot. Every merge is id-deduplicated, so any event may
arrive more than once and from more than one channel.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from lostfound_chat.schemas.conversation import UNKNOWN_LABEL, Conversation
from lostfound_chat.schemas.message import Message
from lostfound_chat.services.thread_projector import (
    ThreadProjector,
    build_conversation,
    counterpart_of,
    sort_messages,
)

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


def new_placeholder_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def make_draft(
    sender_id: str,
    recipient_id: str,
    body: str,
    item_ref: Optional[str] = None,
    temp_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Message:
    temp_id = temp_id or new_placeholder_id()
    return Message(
        id=temp_id,
        item_ref=item_ref,
        sender_id=sender_id,
        recipient_id=recipient_id,
        body=body,
        created_at=created_at or datetime.now(timezone.utc),
        client_message_id=temp_id,
    )


@dataclass(frozen=True)
class PendingSend:
    draft: Message
    # ids visible in the thread when the draft was created; none of them can be its echo
    baseline_ids: FrozenSet[str] = frozenset()

    @property
    def temp_id(self) -> str:
        return self.draft.id

    @property
    def counterpart_id(self) -> str:
        return self.draft.recipient_id


@dataclass(frozen=True)
class EngineState:
    viewer_id: str
    conversations: Tuple[Conversation, ...] = ()
    pending: Tuple[PendingSend, ...] = ()
    # (seq, message) accepted by merge_message while a refresh was outstanding
    incoming: Tuple[Tuple[int, Message], ...] = ()
    seq: int = 0
    by_counterpart: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "by_counterpart",
            {c.counterpart_id: i for i, c in enumerate(self.conversations)},
        )

    def get(self, counterpart_id: Optional[str]) -> Optional[Conversation]:
        index = self.by_counterpart.get(counterpart_id) if counterpart_id else None
        return None if index is None else self.conversations[index]

    def labels(self) -> Dict[str, str]:
        return {c.counterpart_id: c.counterpart_label for c in self.conversations}

    def find_pending(self, temp_id: str) -> Optional[PendingSend]:
        for pending in self.pending:
            if pending.temp_id == temp_id:
                return pending
        return None


def _with_messages(conversation: Conversation, messages: Iterable[Message]) -> Conversation:
    ordered = sort_messages(messages)
    update = {"messages": ordered, "item_ref": ordered[0].item_ref}
    if ordered[0].item_ref != conversation.item_ref:
        update["item_title"] = None
    return conversation.model_copy(update=update)


def _put(conversations: Tuple[Conversation, ...], index: Optional[int], conversation: Conversation) -> Tuple[Conversation, ...]:
    """Replace in place, or insert a new thread at the head."""
    if index is None:
        return (conversation,) + conversations
    return conversations[:index] + (conversation,) + conversations[index + 1:]


def _splice(
    state: EngineState,
    counterpart_id: str,
    add: Optional[Message] = None,
    drop_ids: FrozenSet[str] = frozenset(),
    label: Optional[str] = None,
) -> Tuple[Conversation, ...]:
    index = state.by_counterpart.get(counterpart_id)
    if index is None:
        if add is None:
            return state.conversations
        conversation = build_conversation(state.viewer_id, counterpart_id, [add], label or UNKNOWN_LABEL)
        return _put(state.conversations, None, conversation)

    current = state.conversations[index]
    messages = [m for m in current.messages if m.id not in drop_ids]
    changed = len(messages) != len(current.messages)
    if add is not None and all(m.id != add.id for m in messages):
        messages.append(add)
        changed = True
    if not changed:
        return state.conversations
    if not messages:
        # a thread needs a last message; drop one left with only a rolled-back placeholder
        return state.conversations[:index] + state.conversations[index + 1:]
    return _put(state.conversations, index, _with_messages(current, messages))


def find_echo(pending: Sequence[PendingSend], message: Message, viewer_id: str) -> Optional[PendingSend]:
    """Oldest pending draft that ``message`` is the stored copy of, if any."""
    if message.sender_id != viewer_id or message.id.startswith(LOCAL_ID_PREFIX):
        return None
    if message.client_message_id:
        for candidate in pending:
            if candidate.temp_id == message.client_message_id:
                return candidate
        return None
    for candidate in pending:
        draft = candidate.draft
        if (
            draft.recipient_id == message.recipient_id
            and draft.body == message.body
            and draft.item_ref == message.item_ref
            and message.id not in candidate.baseline_ids
        ):
            return candidate
    return None


def merge_message(
    state: EngineState,
    message: Message,
    label: Optional[str] = None,
    claim_pending: bool = True,
) -> Tuple[EngineState, bool]:
    """Merge one stored message. Returns (state, changed)."""
    counterpart_id = counterpart_of(message, state.viewer_id)
    current = state.get(counterpart_id)
    if current is not None and any(m.id == message.id for m in current.messages):
        return state, False

    echo = find_echo(state.pending, message, state.viewer_id) if claim_pending else None
    drop_ids = frozenset({echo.temp_id}) if echo else frozenset()
    conversations = _splice(state, counterpart_id, add=message, drop_ids=drop_ids, label=label)
    pending = tuple(p for p in state.pending if p is not echo)
    return replace(state, conversations=conversations, pending=pending), True


def add_pending(state: EngineState, draft: Message, label: Optional[str] = None) -> Tuple[EngineState, PendingSend]:
    existing = state.find_pending(draft.id)
    if existing is not None:
        return state, existing
    current = state.get(draft.recipient_id)
    baseline = frozenset(m.id for m in current.messages) if current else frozenset()
    pending = PendingSend(draft=draft, baseline_ids=baseline)
    conversations = _splice(state, draft.recipient_id, add=draft, label=label)
    return replace(state, conversations=conversations, pending=state.pending + (pending,)), pending


def confirm_pending(state: EngineState, temp_id: str, stored: Message, label: Optional[str] = None) -> EngineState:
    """Swap the placeholder for the stored message; dedups against an earlier echo."""
    pending = tuple(p for p in state.pending if p.temp_id != temp_id)
    state = replace(state, pending=pending)
    counterpart_id = counterpart_of(stored, state.viewer_id)
    conversations = _splice(state, counterpart_id, add=stored, drop_ids=frozenset({temp_id}), label=label)
    return replace(state, conversations=conversations)


def drop_pending(state: EngineState, temp_id: str) -> Tuple[EngineState, Optional[PendingSend]]:
    dropped = state.find_pending(temp_id)
    if dropped is None:
        return state, None
    pending = tuple(p for p in state.pending if p is not dropped)
    state = replace(state, pending=pending)
    conversations = _splice(state, dropped.counterpart_id, drop_ids=frozenset({temp_id}))
    return replace(state, conversations=conversations), dropped


def record_incoming(state: EngineState, message: Message) -> EngineState:
    seq = state.seq + 1
    return replace(state, seq=seq, incoming=state.incoming + ((seq, message),))


def rebase(state: EngineState, projected: Sequence[Conversation], since_seq: Optional[int] = None) -> EngineState:
    """
    Replace the thread set with a fresh projection without regressing.

    Messages merged after ``since_seq`` (the refresh was issued before they
    arrived) and still-pending local sends are re-applied on top.
    """
    known_labels = state.labels()
    fresh = replace(state, conversations=tuple(projected), pending=())

    if since_seq is not None:
        for seq, message in state.incoming:
            if seq > since_seq:
                label = known_labels.get(counterpart_of(message, state.viewer_id))
                fresh, _ = merge_message(fresh, message, label=label, claim_pending=False)

    claimed = set()
    for pending in state.pending:
        echo = _find_stored_copy(fresh.get(pending.counterpart_id), pending, claimed)
        if echo is not None:
            # payload already carries the stored copy
            claimed.add(echo.id)
            continue
        conversations = _splice(fresh, pending.counterpart_id, add=pending.draft, label=known_labels.get(pending.counterpart_id))
        fresh = replace(fresh, conversations=conversations, pending=fresh.pending + (pending,))
    return fresh


def _find_stored_copy(conversation: Optional[Conversation], pending: PendingSend, claimed: set) -> Optional[Message]:
    if conversation is None:
        return None
    for message in conversation.messages:
        if message.id not in claimed and find_echo([pending], message, pending.draft.sender_id) is not None:
            return message
    return None


class ReconciliationEngine:
    """Owns the canonical thread collection for one viewer."""

    def __init__(self, viewer_id: str, projector: ThreadProjector) -> None:
        self._projector = projector
        self._state = EngineState(viewer_id=viewer_id)
        self._outstanding: List[int] = []
        # incoming log position at the last committed load_all
        self._loaded_seq = 0
        self._listeners: List[Callable[[EngineState], None]] = []

    @property
    def viewer_id(self) -> str:
        return self._state.viewer_id

    @property
    def state(self) -> EngineState:
        return self._state

    def add_listener(self, listener: Callable[[EngineState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _commit(self, state: EngineState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    def get_conversations(self) -> Tuple[Conversation, ...]:
        return self._state.conversations

    def get_conversation(self, counterpart_id: str) -> Optional[Conversation]:
        return self._state.get(counterpart_id)

    def pending_sends(self) -> Tuple[PendingSend, ...]:
        return self._state.pending

    def begin_refresh(self) -> int:
        """Token for a bulk fetch about to be issued; pass it to ``load_all``."""
        token = self._state.seq
        self._outstanding.append(token)
        return token

    def abandon_refresh(self, token: int) -> None:
        if token in self._outstanding:
            self._outstanding.remove(token)
        self._trim_incoming()

    def _trim_incoming(self) -> None:
        state = self._state
        floor = min(self._outstanding + [self._loaded_seq])
        trimmed = tuple(entry for entry in state.incoming if entry[0] > floor)
        if trimmed != state.incoming:
            # bookkeeping only; no listener notification
            self._state = replace(state, incoming=trimmed)

    async def load_all(self, messages: Sequence[Message], token: Optional[int] = None) -> Tuple[Conversation, ...]:
        """
        Replace the thread set with ``messages``.

        Without a token the payload is assumed to predate everything merged
        since the previous load, and those messages are re-applied on top.
        """
        since_seq = self._loaded_seq if token is None else token
        projected = await self._projector.build(messages, self.viewer_id, self._state.labels())
        self._commit(rebase(self._state, projected, since_seq=since_seq))
        self._loaded_seq = self._state.seq
        if token is not None:
            self.abandon_refresh(token)
        else:
            self._trim_incoming()
        logger.debug(
            "Loaded %d messages into %d conversations (%d pending)",
            len(messages),
            len(self._state.conversations),
            len(self._state.pending),
        )
        return self._state.conversations

    async def _label_for(self, counterpart_id: str) -> Optional[str]:
        if self._state.get(counterpart_id) is not None:
            return None
        labels = await self._projector.resolve_labels([counterpart_id])
        return labels.get(counterpart_id)

    async def apply_incoming(self, message: Message) -> bool:
        counterpart_id = counterpart_of(message, self.viewer_id)
        label = await self._label_for(counterpart_id)
        state, changed = merge_message(self._state, message, label=label)
        if not changed:
            logger.debug("Duplicate message %s ignored", message.id)
            return False
        self._commit(record_incoming(state, message))
        return True

    async def apply_optimistic_send(self, draft: Message) -> PendingSend:
        label = await self._label_for(draft.recipient_id)
        state, pending = add_pending(self._state, draft, label=label)
        self._commit(state)
        return pending

    async def confirm_send(self, temp_id: str, stored: Message) -> None:
        label = await self._label_for(counterpart_of(stored, self.viewer_id))
        state = confirm_pending(self._state, temp_id, stored, label=label)
        self._commit(record_incoming(state, stored))

    def rollback_send(self, temp_id: str) -> Optional[str]:
        """
        Remove a failed send's placeholder and hand back its text.

        ``None`` means the draft was already reconciled with its stored echo,
        i.e. it was persisted and must not be retried.
        """
        state, dropped = drop_pending(self._state, temp_id)
        if dropped is None:
            logger.warning("Rollback for %s ignored: already reconciled", temp_id)
            return None
        self._commit(state)
        return dropped.draft.body
