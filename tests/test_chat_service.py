import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from lostfound_chat.config.settings import Config
from lostfound_chat.errors import MessageValidationError, TransportError
from lostfound_chat.services.chat_service import ChatService, validate_outgoing
from lostfound_chat.services.thread_projector import ThreadProjector
from lostfound_chat.utils.realtime_bus import LocalBus


@pytest.mark.parametrize(
    "sender, recipient, body",
    [
        ("u1", "u1", "hello me"),
        ("u1", "u2", ""),
        ("u1", "u2", "   \n"),
        (None, "u2", "hi"),
        ("u1", "", "hi"),
        ("u1", "u2", "x" * (Config.MESSAGE_MAX_LENGTH + 1)),
    ],
)
def test_validate_outgoing_rejects(sender, recipient, body):
    with pytest.raises(MessageValidationError):
        validate_outgoing(sender, recipient, body)


def test_validate_outgoing_trims():
    assert validate_outgoing("u1", "u2", "  found it \n") == "found it"


@pytest.fixture
def message_repo(make_message):
    repo = MagicMock()
    repo.save_message = AsyncMock(
        side_effect=lambda **kw: make_message(
            "srv-1",
            kw["sender_id"],
            kw["recipient_id"],
            1,
            body=kw["body"],
            item_ref=kw["item_ref"],
            client_message_id=kw["client_message_id"],
        )
    )
    repo.get_for_participant = AsyncMock(return_value=[])
    return repo


@pytest.mark.asyncio
async def test_insert_persists_trimmed_body_and_fans_out(message_repo):
    bus = MagicMock()
    bus.publish = AsyncMock()
    service = ChatService(message_repo, bus)

    saved = await service.insert_message("item-9", "u1", "u2", "  is this yours? ", client_message_id="local-1")

    assert saved.body == "is this yours?"
    assert message_repo.save_message.await_args.kwargs["body"] == "is this yours?"
    channels = [c.args[0] for c in bus.publish.await_args_list]
    assert channels == ["user:u1", "user:u2"]
    payload = json.loads(bus.publish.await_args_list[0].args[1])
    assert payload["id"] == "srv-1"
    assert payload["client_message_id"] == "local-1"


@pytest.mark.asyncio
async def test_invalid_message_never_reaches_store(message_repo):
    service = ChatService(message_repo, LocalBus())

    with pytest.raises(MessageValidationError):
        await service.insert_message("item-9", "u1", "u1", "hi")
    message_repo.save_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_fanout_failure_does_not_fail_insert(message_repo):
    bus = MagicMock()
    bus.publish = AsyncMock(side_effect=TransportError("publish"))
    service = ChatService(message_repo, bus)

    saved = await service.insert_message(None, "u1", "u2", "hi")

    assert saved.id == "srv-1"


@pytest.mark.asyncio
async def test_insert_transport_error_propagates(message_repo):
    message_repo.save_message.side_effect = TransportError("insert message")
    service = ChatService(message_repo, LocalBus())

    with pytest.raises(TransportError):
        await service.insert_message(None, "u1", "u2", "hi")


@pytest.mark.asyncio
async def test_subscribers_receive_inserts_until_unsubscribed(message_repo):
    bus = LocalBus()
    service = ChatService(message_repo, bus)
    received = []
    arrived = asyncio.Event()

    def on_message(message):
        received.append(message)
        arrived.set()

    unsubscribe = await service.subscribe_to_inserts("u2", on_message)
    await bus.publish("user:u2", "not json")
    await service.insert_message(None, "u1", "u2", "hello")
    await asyncio.wait_for(arrived.wait(), timeout=1)
    await unsubscribe()
    await bus.publish("user:u2", "late")

    assert [m.id for m in received] == ["srv-1"]


@pytest.mark.asyncio
async def test_list_conversations_projects_for_viewer(message_repo, make_message, label_resolver):
    message_repo.get_for_participant.return_value = [
        make_message("m1", "u1", "u2", 1),
        make_message("m2", "u2", "u1", 2),
    ]
    service = ChatService(message_repo, LocalBus(), ThreadProjector(label_resolver))

    (thread,) = await service.list_conversations("u1")

    message_repo.get_for_participant.assert_awaited_once_with("u1")
    assert thread.counterpart_label == "Name u2"
    assert [m.id for m in thread.messages] == ["m1", "m2"]
