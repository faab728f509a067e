"""
Thread projection: flat message log -> ordered two-party conversations.

The pure part (``project``) takes already-resolved labels and titles so it
can be re-run freely on every refresh. ``ThreadProjector`` adds the batched
lookups around it.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from lostfound_chat.schemas.conversation import UNKNOWN_LABEL, Conversation
from lostfound_chat.schemas.message import Message

logger = logging.getLogger(__name__)


class LabelResolver(Protocol):
    async def resolve_labels(self, user_ids: Iterable[str]) -> Dict[str, str]: ...


class TitleResolver(Protocol):
    async def resolve_titles(self, item_refs: Iterable[str]) -> Dict[str, str]: ...


def canonical_pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key of a user pair."""
    first, second = sorted((user_a, user_b))
    return f"{first}_{second}"


def message_pair_key(message: Message) -> str:
    return canonical_pair_key(message.sender_id, message.recipient_id)


def counterpart_of(message: Message, viewer_id: str) -> str:
    return message.recipient_id if message.sender_id == viewer_id else message.sender_id


def message_sort_key(message: Message) -> Tuple:
    return (message.created_at, message.id)


def sort_messages(messages: Iterable[Message]) -> Tuple[Message, ...]:
    return tuple(sorted(messages, key=message_sort_key))


def recency_key(conversation: Conversation) -> Tuple:
    return message_sort_key(conversation.last_message)


def build_conversation(
    viewer_id: str,
    counterpart_id: str,
    messages: Iterable[Message],
    label: str,
    item_title: Optional[str] = None,
) -> Conversation:
    ordered = sort_messages(messages)
    return Conversation(
        key=canonical_pair_key(viewer_id, counterpart_id),
        counterpart_id=counterpart_id,
        counterpart_label=label,
        messages=ordered,
        item_ref=ordered[0].item_ref,
        item_title=item_title,
    )


def counterpart_ids(messages: Iterable[Message], viewer_id: str) -> Set[str]:
    return {counterpart_of(m, viewer_id) for m in messages}


def project(
    messages: Sequence[Message],
    viewer_id: str,
    labels: Optional[Mapping[str, str]] = None,
    item_titles: Optional[Mapping[str, str]] = None,
) -> List[Conversation]:
    """Group by unordered pair, sort each thread, newest-active thread first."""
    labels = labels or {}
    item_titles = item_titles or {}

    groups: Dict[str, Dict[str, Message]] = defaultdict(dict)
    for message in messages:
        # last copy of a repeated id wins; copies are identical by contract
        groups[counterpart_of(message, viewer_id)][message.id] = message

    conversations = []
    for counterpart_id, by_id in groups.items():
        conversation = build_conversation(
            viewer_id,
            counterpart_id,
            by_id.values(),
            labels.get(counterpart_id) or UNKNOWN_LABEL,
        )
        if conversation.item_ref:
            conversation = conversation.model_copy(
                update={"item_title": item_titles.get(conversation.item_ref)}
            )
        conversations.append(conversation)

    conversations.sort(key=recency_key, reverse=True)
    return conversations


class ThreadProjector:
    """Projection plus one batched label lookup and one batched title lookup."""

    def __init__(self, label_resolver: LabelResolver, title_resolver: Optional[TitleResolver] = None) -> None:
        self._label_resolver = label_resolver
        self._title_resolver = title_resolver

    async def resolve_labels(
        self, user_ids: Iterable[str], known: Optional[Mapping[str, str]] = None
    ) -> Dict[str, str]:
        ids = set(user_ids)
        known = known or {}
        if not ids:
            return {}
        try:
            resolved = await self._label_resolver.resolve_labels(ids)
        except Exception as exc:
            logger.warning("Label resolution failed for %d users: %s", len(ids), exc)
            resolved = {}
        return {uid: resolved.get(uid) or known.get(uid) or UNKNOWN_LABEL for uid in ids}

    async def resolve_titles(self, item_refs: Iterable[str]) -> Dict[str, str]:
        refs = {ref for ref in item_refs if ref}
        if self._title_resolver is None or not refs:
            return {}
        try:
            return await self._title_resolver.resolve_titles(refs)
        except Exception as exc:
            logger.warning("Item title resolution failed: %s", exc)
            return {}

    async def build(
        self,
        messages: Sequence[Message],
        viewer_id: str,
        known_labels: Optional[Mapping[str, str]] = None,
    ) -> List[Conversation]:
        labels = await self.resolve_labels(counterpart_ids(messages, viewer_id), known_labels)
        titles = await self.resolve_titles(m.item_ref for m in messages)
        return project(messages, viewer_id, labels, titles)
