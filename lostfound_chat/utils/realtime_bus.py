import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from lostfound_chat.config.settings import Config
from lostfound_chat.errors import TransportError

logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class LocalBus:
    """In-process fanout, used when no Redis is configured (single worker)."""

    enabled = False

    def __init__(self) -> None:
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, [])):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, []).append(queue)
        queues = self._queues

        class _Sub:
            async def run(self_inner):
                while True:
                    data = await queue.get()
                    try:
                        await on_message(data)
                    except Exception:
                        logger.exception("Subscriber for %s failed", channel)

            async def cancel(self_inner):
                listeners = queues.get(channel, [])
                if queue in listeners:
                    listeners.remove(queue)
                if not listeners:
                    queues.pop(channel, None)

        return _Sub()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except RedisError as exc:
            raise TransportError("publish", exc) from exc

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            raise TransportError("subscribe", exc) from exc

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError as exc:
                        logger.warning("Redis subscription on %s interrupted: %s", channel, exc)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Subscriber for %s failed", channel)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisError as exc:
                    logger.warning("Unsubscribe from %s failed: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if Config.REDIS_URL:
        _bus = RedisBus(Config.REDIS_URL)
    else:
        _bus = LocalBus()
    logger.info("Realtime bus: %s", type(_bus).__name__)
    return _bus


async def close_bus() -> None:
    global _bus
    bus: Optional[object] = _bus
    _bus = None
    if isinstance(bus, RedisBus):
        await bus.close()
