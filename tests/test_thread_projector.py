from unittest.mock import AsyncMock

import pytest

from lostfound_chat.errors import TransportError
from lostfound_chat.services.thread_projector import (
    ThreadProjector,
    canonical_pair_key,
    counterpart_of,
    message_pair_key,
    project,
)


def test_canonical_pair_key_ignores_direction():
    assert canonical_pair_key("u1", "u2") == canonical_pair_key("u2", "u1") == "u1_u2"


def test_counterpart_is_the_other_participant(make_message):
    outgoing = make_message("m1", "u1", "u2", 1)
    incoming = make_message("m2", "u2", "u1", 2)
    assert counterpart_of(outgoing, "u1") == "u2"
    assert counterpart_of(incoming, "u1") == "u2"


def test_two_party_exchange_becomes_one_thread(make_message):
    m1 = make_message("m1", "U1", "U2", 1)
    m2 = make_message("m2", "U2", "U1", 2)

    conversations = project([m2, m1], "U1")

    assert len(conversations) == 1
    thread = conversations[0]
    assert thread.counterpart_id == "U2"
    assert thread.key == "U1_U2"
    assert [m.id for m in thread.messages] == ["m1", "m2"]
    assert thread.last_message == m2


def test_messages_sorted_by_time_then_id(make_message):
    late = make_message("b", "u1", "u2", 5)
    tie_b = make_message("z", "u2", "u1", 3)
    tie_a = make_message("a", "u1", "u2", 3)

    thread = project([late, tie_b, tie_a], "u1")[0]

    assert [m.id for m in thread.messages] == ["a", "z", "b"]


def test_threads_ordered_newest_activity_first(make_message):
    messages = [
        make_message("m1", "u1", "u2", 1),
        make_message("m2", "u3", "u1", 2),
        make_message("m3", "u1", "u4", 3),
        make_message("m4", "u2", "u1", 4),
    ]

    conversations = project(messages, "u1")

    assert [c.counterpart_id for c in conversations] == ["u2", "u4", "u3"]


def test_every_message_lands_in_its_pair_thread(make_message):
    messages = [
        make_message(f"m{i}", sender, recipient, i)
        for i, (sender, recipient) in enumerate(
            [("u1", "u2"), ("u2", "u1"), ("u3", "u1"), ("u1", "u3"), ("u1", "u4")]
        )
    ]

    conversations = project(messages, "u1")

    seen = {}
    for conversation in conversations:
        for message in conversation.messages:
            assert message_pair_key(message) == conversation.key
            seen[message.id] = seen.get(message.id, 0) + 1
    assert seen == {m.id: 1 for m in messages}
    assert len({c.counterpart_id for c in conversations}) == len(conversations)


def test_repeated_ids_in_payload_collapse(make_message):
    m1 = make_message("m1", "u1", "u2", 1)

    thread = project([m1, m1, make_message("m2", "u2", "u1", 2)], "u1")[0]

    assert [m.id for m in thread.messages] == ["m1", "m2"]


def test_missing_labels_fall_back_to_unknown(make_message):
    thread = project([make_message("m1", "u1", "u2", 1)], "u1", labels={})[0]
    assert thread.counterpart_label == "Unknown"


def test_projection_is_repeatable(make_message):
    messages = [make_message("m1", "u1", "u2", 1), make_message("m2", "u3", "u1", 2)]
    labels = {"u2": "Ada", "u3": "Lin"}

    assert project(messages, "u1", labels) == project(messages, "u1", labels)


def test_item_ref_and_title_come_from_first_message(make_message):
    messages = [
        make_message("m1", "u2", "u1", 1, item_ref="wallet"),
        make_message("m2", "u1", "u2", 2, item_ref="keys"),
    ]

    thread = project(messages, "u1", item_titles={"wallet": "Brown wallet"})[0]

    assert thread.item_ref == "wallet"
    assert thread.item_title == "Brown wallet"


def test_empty_input_projects_to_nothing():
    assert project([], "u1") == []


@pytest.mark.asyncio
async def test_build_resolves_labels_once_per_projection(make_message, label_resolver, title_resolver):
    messages = [make_message(f"m{i}", "u1", f"u{i % 3 + 2}", i) for i in range(9)]
    projector = ThreadProjector(label_resolver, title_resolver)

    conversations = await projector.build(messages, "u1")

    label_resolver.resolve_labels.assert_awaited_once()
    assert set(label_resolver.resolve_labels.await_args.args[0]) == {"u2", "u3", "u4"}
    title_resolver.resolve_titles.assert_awaited_once()
    assert {c.counterpart_label for c in conversations} == {"Name u2", "Name u3", "Name u4"}
    assert all(c.item_title == "Title item-1" for c in conversations)


@pytest.mark.asyncio
async def test_build_degrades_when_resolver_fails(make_message):
    resolver = AsyncMock()
    resolver.resolve_labels.side_effect = TransportError("resolve labels")
    projector = ThreadProjector(resolver)
    messages = [make_message("m1", "u1", "u2", 1), make_message("m2", "u3", "u1", 2)]

    conversations = await projector.build(messages, "u1", known_labels={"u2": "Ada"})

    labels = {c.counterpart_id: c.counterpart_label for c in conversations}
    assert labels == {"u2": "Ada", "u3": "Unknown"}


@pytest.mark.asyncio
async def test_build_with_no_messages_skips_lookups(label_resolver):
    projector = ThreadProjector(label_resolver)

    assert await projector.build([], "u1") == []
    label_resolver.resolve_labels.assert_not_awaited()
