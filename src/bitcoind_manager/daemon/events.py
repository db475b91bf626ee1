"""Publish/subscribe channel for supervisor events.

Each subscriber owns a bounded asyncio.Queue. Publishing never blocks: an
event that does not fit in a slow subscriber's queue is dropped for that
subscriber only, with a warning. Subscribers detach with ``unsubscribe()``
or by leaving the ``async with`` block.
"""

import asyncio
import uuid

from loguru import logger

from ..models import SupervisorEvent

DEFAULT_QUEUE_SIZE = 100


class Subscription:
    """A subscriber's view of the channel, iterable with ``async for``."""

    def __init__(self, channel: "ExitEventChannel", sub_id: str, maxsize: int) -> None:
        self.sub_id = sub_id
        self.queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue(maxsize=maxsize)
        self._channel = channel

    async def get(self) -> SupervisorEvent:
        return await self.queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self.sub_id)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> SupervisorEvent:
        return await self.queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ExitEventChannel:
    """Fan-out of supervisor events to every current subscriber."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> Subscription:
        sub_id = uuid.uuid4().hex[:12]
        subscription = Subscription(self, sub_id, self._queue_size)
        self._subscriptions[sub_id] = subscription
        logger.debug(f"Event subscriber {sub_id} attached")
        return subscription

    def unsubscribe(self, sub_id: str) -> None:
        if self._subscriptions.pop(sub_id, None) is not None:
            logger.debug(f"Event subscriber {sub_id} detached")

    def publish(self, event: SupervisorEvent) -> int:
        """Queue ``event`` for every subscriber.

        Returns:
            Number of subscribers the event was delivered to.
        """
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber {subscription.sub_id} is not keeping up; dropped {event.type} event")
        return delivered
