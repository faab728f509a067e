"""
Shared fixtures: message factory, label resolver mock, in-memory message store.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from lostfound_chat.errors import TransportError
from lostfound_chat.schemas.message import Message
from lostfound_chat.services.thread_projector import ThreadProjector

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_message(id, sender, recipient, t, body=None, item_ref="item-1", **overrides) -> Message:
    return Message(
        id=id,
        sender_id=sender,
        recipient_id=recipient,
        body=body if body is not None else f"body of {id}",
        created_at=BASE_TIME + timedelta(seconds=t),
        item_ref=item_ref,
        **overrides,
    )


class InMemoryStore:
    """Message Store double: bulk fetch, insert with fanout, push subscriptions."""

    def __init__(self, messages=None):
        self.messages = list(messages or [])
        self.subscribers = {}
        self.fail_inserts = False
        self.fail_fetches = False
        self.fetch_calls = 0
        self._next_id = 100

    async def fetch_messages_for_participant(self, user_id):
        self.fetch_calls += 1
        if self.fail_fetches:
            raise TransportError("fetch messages")
        return [m for m in self.messages if user_id in (m.sender_id, m.recipient_id)]

    async def insert_message(self, item_ref, sender_id, recipient_id, body, client_message_id=None):
        if self.fail_inserts:
            raise TransportError("insert message")
        self._next_id += 1
        stored = _make_message(
            f"srv-{self._next_id}",
            sender_id,
            recipient_id,
            self._next_id,
            body=body,
            item_ref=item_ref,
            client_message_id=client_message_id,
        )
        self.messages.append(stored)
        self.deliver(stored)
        return stored

    def deliver(self, message):
        for user_id in (message.sender_id, message.recipient_id):
            for callback in list(self.subscribers.get(user_id, [])):
                callback(message)

    async def subscribe_to_inserts(self, user_id, on_message):
        self.subscribers.setdefault(user_id, []).append(on_message)

        async def unsubscribe():
            self.subscribers[user_id].remove(on_message)

        return unsubscribe


@pytest.fixture
def make_message():
    return _make_message


@pytest.fixture
def label_resolver():
    resolver = AsyncMock()
    resolver.resolve_labels.side_effect = lambda ids: {uid: f"Name {uid}" for uid in ids}
    return resolver


@pytest.fixture
def title_resolver():
    resolver = AsyncMock()
    resolver.resolve_titles.side_effect = lambda refs: {ref: f"Title {ref}" for ref in refs}
    return resolver


@pytest.fixture
def projector(label_resolver):
    return ThreadProjector(label_resolver)


@pytest.fixture
def store():
    return InMemoryStore()
