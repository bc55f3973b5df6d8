import asyncio
import json
import logging
from typing import Awaitable, Callable

from pydantic import ValidationError
from redis.exceptions import RedisError

from .schemas import BusAction, BusMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BusMessage], Awaitable[None]]


class MessageBus:
    """Scheduling messages carried on a Redis list.

    Popping a message is its acknowledgment and happens before the handler
    runs, so a worker crash mid-handler loses that delivery and a publisher
    retry may deliver it twice.
    """

    def __init__(self, redis_client, queue_key: str = "compci:messages", poll_timeout: int = 5,
                 retry_delay: float = 5.0):
        self.redis = redis_client
        self.queue_key = queue_key
        self.poll_timeout = poll_timeout
        self.retry_delay = retry_delay
        self._stopped = False

    async def publish(self, action: BusAction, job_id: str):
        payload = {"action": BusAction(action).value, "id": job_id}
        await self.redis.lpush(self.queue_key, json.dumps(payload))
        logger.info(f"Message published: {payload}")

    async def queue_test(self, job_id: str):
        await self.publish(BusAction.RUN_TEST, job_id)

    async def dequeue_test(self, job_id: str):
        await self.publish(BusAction.REMOVE_TEST, job_id)

    async def get_queue_size(self) -> int:
        return await self.redis.llen(self.queue_key)

    def parse(self, raw: str) -> BusMessage:
        return BusMessage.model_validate(json.loads(raw))

    async def receive_one(self, handler: MessageHandler) -> bool:
        item = await self.redis.brpop(self.queue_key, timeout=self.poll_timeout)
        if not item:
            return False
        _, raw = item
        try:
            message = self.parse(raw)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Dropping invalid message {raw!r}: {e}")
            return True
        try:
            await handler(message)
        except Exception as e:
            logger.error(f"Error handling message {message.model_dump()}: {e}")
        return True

    async def subscribe(self, handler: MessageHandler):
        logger.info(f"Subscribed to {self.queue_key}")
        self._stopped = False
        while not self._stopped:
            try:
                await self.receive_one(handler)
            except RedisError as e:
                logger.error(f"Error reading from {self.queue_key}: {e}. Retrying in {self.retry_delay}s")
                await asyncio.sleep(self.retry_delay)
        logger.info(f"Unsubscribed from {self.queue_key}")

    def stop(self):
        self._stopped = True
