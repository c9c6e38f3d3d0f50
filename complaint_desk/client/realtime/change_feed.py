import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

import complaint_desk.config.config as configs
from complaint_desk.model.change.change_event import ChangeEvent

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class ChangeSubscription:
    def __init__(self, channel: str, pubsub: PubSub, task: asyncio.Task):
        self.channel = channel
        self._pubsub = pubsub
        self._task = task

    async def close(self) -> None:
        self._task.cancel()
        with suppress(asyncio.CancelledError, RedisError):
            await self._task
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError:
            logger.warning("failed to close subscription channel=%s", self.channel)


class RedisChangeFeed:
    """
    Table change notifications over Redis pub/sub, one channel per table.

    A listener that loses its connection resubscribes with exponential backoff
    and then hands its handler a ``RESYNC`` event, since anything published
    while it was away is gone.
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = configs.CHANGE_FEED_PREFIX,
        retry_wait: float = configs.FEED_RETRY_WAIT_SECONDS,
    ):
        self._client = client
        self._prefix = prefix
        self._retry_wait = retry_wait

    def channel(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    async def publish(self, event: ChangeEvent) -> None:
        await self._client.publish(self.channel(event.table), event.model_dump_json())

    async def subscribe(self, table: str, handler: ChangeHandler) -> ChangeSubscription:
        channel = self.channel(table)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._listen(table, pubsub, handler))
        logger.info("subscribed channel=%s", channel)
        return ChangeSubscription(channel, pubsub, task)

    async def _listen(self, table: str, pubsub: PubSub, handler: ChangeHandler) -> None:
        channel = self.channel(table)
        while True:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        event = ChangeEvent.model_validate(json.loads(message["data"]))
                    except (json.JSONDecodeError, PydanticValidationError):
                        logger.warning("dropping malformed change event data=%s", message.get("data"))
                        continue
                    await self._deliver(handler, event)
                return
            except RedisError:
                logger.exception("change feed connection lost channel=%s", channel)
            await self._resubscribe(pubsub, channel)
            await self._deliver(handler, ChangeEvent(table=table, event="RESYNC"))

    async def _resubscribe(self, pubsub: PubSub, channel: str) -> None:
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=self._retry_wait, max=30),
            retry=retry_if_exception_type(RedisError),
        ):
            with attempt:
                await pubsub.subscribe(channel)
        logger.info("resubscribed channel=%s", channel)

    async def _deliver(self, handler: ChangeHandler, event: ChangeEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("change handler failed table=%s event=%s", event.table, event.event)
