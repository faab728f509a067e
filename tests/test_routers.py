from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from lostfound_chat.errors import MessageValidationError, TransportError
from lostfound_chat.main import app
from lostfound_chat.services.thread_projector import project
from lostfound_chat.utils.dependencies import get_chat_service


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service):
    app.dependency_overrides[get_chat_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_requests_without_identity_are_rejected(client):
    assert client.get("/conversations").status_code == 401


def test_list_conversations(client, service, make_message):
    service.list_conversations = AsyncMock(
        return_value=project([make_message("m1", "u1", "u2", 1)], "u1", {"u2": "Ada"})
    )

    response = client.get("/conversations", headers={"X-User-Id": "u1"})

    assert response.status_code == 200
    (thread,) = response.json()["conversations"]
    assert thread["counterpart_label"] == "Ada"
    assert thread["last_message"]["id"] == "m1"
    service.list_conversations.assert_awaited_once_with("u1")


def test_send_message_created(client, service, make_message):
    service.insert_message = AsyncMock(return_value=make_message("srv-1", "u1", "u2", 1, body="hi"))

    response = client.post(
        "/messages",
        json={"recipient_id": "u2", "body": "hi", "item_ref": "item-1", "client_message_id": "local-1"},
        headers={"X-User-Id": "u1"},
    )

    assert response.status_code == 201
    assert response.json()["message"]["id"] == "srv-1"
    args = service.insert_message.await_args
    assert args.args == ("item-1", "u1", "u2", "hi")
    assert args.kwargs == {"client_message_id": "local-1"}


def test_send_message_validation_error(client, service):
    service.insert_message = AsyncMock(side_effect=MessageValidationError("Cannot send message to yourself"))

    response = client.post("/messages", json={"recipient_id": "u1", "body": "hi"}, headers={"X-User-Id": "u1"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot send message to yourself"


def test_send_message_transport_error(client, service):
    service.insert_message = AsyncMock(side_effect=TransportError("insert message"))

    response = client.post("/messages", json={"recipient_id": "u2", "body": "hi"}, headers={"X-User-Id": "u1"})

    assert response.status_code == 503
