import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import ValidationError

from lostfound_chat.config.settings import Config
from lostfound_chat.errors import MessageValidationError, TransportError
from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.schemas.conversation import Conversation
from lostfound_chat.schemas.message import Message
from lostfound_chat.services.thread_projector import ThreadProjector
from lostfound_chat.utils.realtime_bus import user_channel

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], Awaitable[None]]


def validate_outgoing(sender_id: Optional[str], recipient_id: Optional[str], body: Optional[str]) -> str:
    """Returns the trimmed body, or raises MessageValidationError."""
    if not sender_id or not recipient_id:
        raise MessageValidationError("Missing required fields: sender_id, recipient_id")
    if sender_id == recipient_id:
        raise MessageValidationError("Cannot send message to yourself")
    text = (body or "").strip()
    if not text:
        raise MessageValidationError("Message content cannot be empty")
    if len(text) > Config.MESSAGE_MAX_LENGTH:
        raise MessageValidationError(f"Message longer than {Config.MESSAGE_MAX_LENGTH} characters")
    return text


class ChatService:
    """Message Store boundary: bulk fetch, validated insert, insert fanout."""

    def __init__(self, message_repo: MessageRepository, bus, projector: Optional[ThreadProjector] = None) -> None:
        self._message_repo = message_repo
        self._bus = bus
        self._projector = projector

    async def insert_message(
        self,
        item_ref: Optional[str],
        sender_id: str,
        recipient_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        text = validate_outgoing(sender_id, recipient_id, body)
        saved = await self._message_repo.save_message(
            item_ref=item_ref,
            sender_id=sender_id,
            recipient_id=recipient_id,
            body=text,
            client_message_id=client_message_id,
        )
        await self._publish(saved)
        return saved

    async def _publish(self, message: Message) -> None:
        payload = message.model_dump_json()
        for user_id in (message.sender_id, message.recipient_id):
            try:
                await self._bus.publish(user_channel(user_id), payload)
            except TransportError as exc:
                # persisted already; the next poll picks it up
                logger.warning("Fanout of %s to %s failed: %s", message.id, user_id, exc)

    async def fetch_messages_for_participant(self, user_id: str) -> List[Message]:
        return await self._message_repo.get_for_participant(user_id)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        if self._projector is None:
            raise RuntimeError("ChatService was built without a projector")
        messages = await self.fetch_messages_for_participant(user_id)
        return await self._projector.build(messages, user_id)

    async def subscribe_to_inserts(self, user_id: str, on_message: Callable[[Message], Any]) -> Unsubscribe:
        async def _deliver(raw: str) -> None:
            try:
                message = Message.model_validate_json(raw)
            except ValidationError:
                logger.error("Dropping undecodable insert event for %s: %.200s", user_id, raw)
                return
            result = on_message(message)
            if inspect.isawaitable(result):
                await result

        subscriber = await self._bus.subscribe(user_channel(user_id), _deliver)
        task = asyncio.create_task(subscriber.run())

        async def unsubscribe() -> None:
            await subscriber.cancel()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        return unsubscribe
