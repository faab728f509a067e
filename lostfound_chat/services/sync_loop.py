"""
Single-consumer command loop feeding the reconciliation engine.

This is the client-side half of messaging: one ``ConversationSync`` per
signed-in viewer, embedded in whatever process renders that viewer's inbox.
Any ``MessageStore`` works; in-process that is ``ChatService`` itself:

    engine = ReconciliationEngine(user_id, projector)
    sync = ConversationSync(user_id, chat_service, engine)
    await sync.start()

The HTTP routers only serve the store side and never construct one.

Poll timer, push subscription and user sends never touch engine state
directly. They enqueue commands that one worker applies in arrival order.
Network waits (bulk fetch, insert) run as side tasks that enqueue their
result when done, so they never block merging.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from lostfound_chat.config.settings import Config
from lostfound_chat.errors import ChatError, TransportError
from lostfound_chat.schemas.conversation import Conversation
from lostfound_chat.schemas.message import Message
from lostfound_chat.services.chat_service import validate_outgoing
from lostfound_chat.services.reconciliation import ReconciliationEngine, make_draft
from lostfound_chat.services.selection import SelectionController

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    async def fetch_messages_for_participant(self, user_id: str) -> List[Message]: ...

    async def insert_message(
        self,
        item_ref: Optional[str],
        sender_id: str,
        recipient_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message: ...

    async def subscribe_to_inserts(
        self, user_id: str, on_message: Callable[[Message], Any]
    ) -> Callable[[], Awaitable[None]]: ...


@dataclass
class SendOutcome:
    temp_id: str
    message: Optional[Message] = None
    # draft text handed back for retry; None when nothing needs retrying
    retry_body: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _LoadAll:
    messages: List[Message]
    token: int


@dataclass
class _Incoming:
    message: Message


@dataclass
class _Send:
    draft: Message
    future: asyncio.Future


@dataclass
class _Confirm:
    temp_id: str
    stored: Message
    future: asyncio.Future


@dataclass
class _Fail:
    temp_id: str
    error: BaseException
    future: asyncio.Future


class ConversationSync:

    def __init__(
        self,
        viewer_id: str,
        store: MessageStore,
        engine: ReconciliationEngine,
        selection: Optional[SelectionController] = None,
        poll_interval: float = Config.POLL_INTERVAL_SECONDS,
    ) -> None:
        if engine.viewer_id != viewer_id:
            raise ValueError("engine belongs to a different viewer")
        self.viewer_id = viewer_id
        self.engine = engine
        self.selection = selection or SelectionController()
        self._store = store
        self._poll_interval = poll_interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._side_tasks: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._worker: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._process_queue())
        self._unsubscribe = await self._store.subscribe_to_inserts(self.viewer_id, self.push)
        if self._poll_interval > 0:
            self._poller = asyncio.create_task(self._poll())
        self.request_refresh()
        logger.info("Conversation sync started for %s", self.viewer_id)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            await self._unsubscribe()
            self._unsubscribe = None
        tasks = [t for t in (self._poller, self._worker) if t is not None] + list(self._side_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poller = self._worker = None
        self._side_tasks.clear()
        logger.info("Conversation sync stopped for %s", self.viewer_id)

    # --- event sources -------------------------------------------------

    def push(self, message: Message) -> None:
        """Push-channel callback."""
        self._queue.put_nowait(_Incoming(message))

    def request_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        token = self.engine.begin_refresh()
        self._refresh_task = self._spawn(self._fetch(token))

    async def send(
        self,
        body: str,
        counterpart_id: Optional[str] = None,
        item_ref: Optional[str] = None,
    ) -> SendOutcome:
        counterpart_id = counterpart_id or self.selection.active_counterpart_id
        text = validate_outgoing(self.viewer_id, counterpart_id, body)
        if item_ref is None:
            existing = self.engine.get_conversation(counterpart_id)
            item_ref = existing.item_ref if existing else None
        draft = make_draft(self.viewer_id, counterpart_id, text, item_ref=item_ref)
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Send(draft, future))
        return await future

    # --- views ---------------------------------------------------------

    def select(self, counterpart_id: str) -> bool:
        return self.selection.select(counterpart_id)

    def conversations(self):
        return self.engine.get_conversations()

    def active_conversation(self) -> Optional[Conversation]:
        return self.selection.current_conversation(self.engine.state)

    async def wait_idle(self) -> None:
        """Wait until no command is queued and no fetch or insert is in flight."""
        while True:
            if self._side_tasks:
                await asyncio.gather(*list(self._side_tasks), return_exceptions=True)
            await self._queue.join()
            if not self._side_tasks and self._queue.empty():
                return

    # --- internals -----------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)
        return task

    def _stored_copy(self, temp_id: str) -> Optional[Message]:
        for conversation in self.engine.get_conversations():
            for message in conversation.messages:
                if message.client_message_id == temp_id and message.id != temp_id:
                    return message
        return None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            self.request_refresh()

    async def _fetch(self, token: int) -> None:
        try:
            messages = await self._store.fetch_messages_for_participant(self.viewer_id)
        except TransportError as exc:
            self.engine.abandon_refresh(token)
            logger.warning("Refresh for %s failed, keeping current state: %s", self.viewer_id, exc)
            return
        except Exception:
            self.engine.abandon_refresh(token)
            logger.exception("Refresh for %s failed unexpectedly, keeping current state", self.viewer_id)
            return
        self._queue.put_nowait(_LoadAll(messages, token))

    async def _insert(self, draft: Message, future: asyncio.Future) -> None:
        try:
            stored = await self._store.insert_message(
                draft.item_ref,
                draft.sender_id,
                draft.recipient_id,
                draft.body,
                client_message_id=draft.id,
            )
        except ChatError as exc:
            logger.warning("Send %s failed: %s", draft.id, exc)
            self._queue.put_nowait(_Fail(draft.id, exc, future))
            return
        except Exception as exc:
            # the placeholder must still be rolled back and send() resolved
            logger.exception("Send %s failed unexpectedly", draft.id)
            self._queue.put_nowait(_Fail(draft.id, exc, future))
            return
        self._queue.put_nowait(_Confirm(draft.id, stored, future))

    async def _handle(self, command) -> None:
        if isinstance(command, _LoadAll):
            await self.engine.load_all(command.messages, token=command.token)
        elif isinstance(command, _Incoming):
            await self.engine.apply_incoming(command.message)
        elif isinstance(command, _Send):
            try:
                await self.engine.apply_optimistic_send(command.draft)
            except Exception as exc:
                if not command.future.done():
                    command.future.set_exception(exc)
                raise
            self._spawn(self._insert(command.draft, command.future))
        elif isinstance(command, _Confirm):
            await self.engine.confirm_send(command.temp_id, command.stored)
            if not command.future.done():
                command.future.set_result(SendOutcome(command.temp_id, message=command.stored))
        elif isinstance(command, _Fail):
            retry_body = self.engine.rollback_send(command.temp_id)
            if retry_body is None:
                # the echo already reconciled it, so the insert did go through
                outcome = SendOutcome(command.temp_id, message=self._stored_copy(command.temp_id))
            else:
                outcome = SendOutcome(command.temp_id, retry_body=retry_body, error=command.error)
            if not command.future.done():
                command.future.set_result(outcome)
        else:
            logger.warning("Unknown command %r dropped", command)

    async def _process_queue(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                await self._handle(command)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to apply %s", type(command).__name__)
            finally:
                self._queue.task_done()
