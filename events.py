"""
Change notifications for job records.

The store publishes every applied mutation; waiters subscribe to the
updates of a single request id. Subscriptions are fan-out, so any number of
waiters can follow the same job.

Two buses are provided:

* ``RedisJobEvents`` - Redis pub/sub, one channel per request id. Works
  across processes (API workers, RQ worker, webhook receiver).
* ``LocalJobEvents`` - in-process fan-out for single-process deployments and
  tests.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Set

import redis
import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from errors import SubscriptionError
from models import JobRecord, JobStatus

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "job-updates:"


def channel_for(request_id: str) -> str:
    return f"{CHANNEL_PREFIX}{request_id}"


class JobEvent(BaseModel):
    request_id: str
    status: JobStatus
    result_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobEvent":
        return cls(
            request_id=job.request_id,
            status=job.status,
            result_url=job.result_url,
            error=job.error,
            updated_at=job.updated_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Subscription(ABC):
    @abstractmethod
    async def get(self) -> JobEvent:
        """Next event for the subscribed job; raises SubscriptionError if the channel drops"""


class JobEvents(ABC):
    @abstractmethod
    def publish(self, job: JobRecord) -> None:
        ...

    @abstractmethod
    def subscribe(self, request_id: str) -> AsyncIterator[Subscription]:
        """Async context manager; entering it waits for the subscription to be confirmed"""

    async def aclose(self) -> None:
        pass


class _LocalSubscription(Subscription):
    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, item):
        # publish() may run in a worker thread
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Dropping event for a subscription whose loop is closed")

    async def get(self) -> JobEvent:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item


class LocalJobEvents(JobEvents):
    def __init__(self):
        self._subscribers: Dict[str, Set[_LocalSubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, job: JobRecord) -> None:
        event = JobEvent.from_record(job)
        with self._lock:
            targets = list(self._subscribers.get(job.request_id, ()))
        for subscription in targets:
            subscription.deliver(event)

    @asynccontextmanager
    async def subscribe(self, request_id: str):
        subscription = _LocalSubscription(asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(request_id, set()).add(subscription)
        try:
            yield subscription
        finally:
            with self._lock:
                subscribers = self._subscribers.get(request_id)
                if subscribers is not None:
                    subscribers.discard(subscription)
                    if not subscribers:
                        del self._subscribers[request_id]

    def subscriber_count(self, request_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(request_id, ()))

    def disconnect_all(self, reason: str = "event bus closed"):
        """Fail every open subscription with SubscriptionError"""
        with self._lock:
            targets = [s for subs in self._subscribers.values() for s in subs]
        for subscription in targets:
            subscription.deliver(SubscriptionError(reason))

    async def aclose(self) -> None:
        self.disconnect_all()


class _RedisSubscription(Subscription):
    def __init__(self, pubsub):
        self._pubsub = pubsub

    async def get(self) -> JobEvent:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
            except (RedisError, OSError) as e:
                raise SubscriptionError(f"Subscription channel dropped: {e}") from e

            if not message or message.get("type") != "message":
                continue
            try:
                return JobEvent.model_validate_json(message["data"])
            except ValidationError as e:
                logger.warning(f"Ignoring malformed job event on {message.get('channel')}: {e}")


class RedisJobEvents(JobEvents):
    def __init__(self, redis_url: str, confirm_timeout: float = 5.0):
        self.redis_url = redis_url
        self.confirm_timeout = confirm_timeout
        self._publisher = redis.from_url(redis_url)

    def publish(self, job: JobRecord) -> None:
        payload = JobEvent.from_record(job).model_dump_json()
        self._publisher.publish(channel_for(job.request_id), payload)

    async def _wait_confirmed(self, pubsub):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SubscriptionError("Subscription was not confirmed in time")
            message = await pubsub.get_message(timeout=remaining)
            if message and message.get("type") == "subscribe":
                return

    @asynccontextmanager
    async def subscribe(self, request_id: str):
        channel = channel_for(request_id)
        client = aioredis.from_url(self.redis_url)
        pubsub = client.pubsub()
        try:
            try:
                await pubsub.subscribe(channel)
                await self._wait_confirmed(pubsub)
            except (RedisError, OSError) as e:
                raise SubscriptionError(f"Could not subscribe to {channel}: {e}") from e

            yield _RedisSubscription(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(channel)
            except (RedisError, OSError) as e:
                logger.debug(f"Unsubscribe from {channel} failed: {e}")
            await pubsub.aclose()
            await client.aclose()

    async def aclose(self) -> None:
        self._publisher.close()


def make_events(redis_url: Optional[str]) -> JobEvents:
    if redis_url:
        return RedisJobEvents(redis_url)
    logger.info("REDIS_URL not set, using in-process job events")
    return LocalJobEvents()
