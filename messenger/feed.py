"""Row-level change feed.

Subscribers register for one table, optionally narrowed to a single event
kind and a single equality filter written as ``column=eq.value``. Events
carry the raw column values of the changed row, never the joined form.

``LocalFeed`` dispatches inside the running event loop. ``RedisFeed``
fans events out through Redis pub/sub so several processes share them.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from messenger import config
from messenger.errors import RemoteError
from messenger.schemas import ChangeEvent

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], Awaitable[None]]

ALL_EVENTS = "*"


def parse_filter(expr: Optional[str]) -> Optional[Tuple[str, str]]:
    if not expr:
        return None
    column, sep, rest = expr.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or op != "eq" or not column:
        raise ValueError(f"Unsupported filter expression: {expr!r}")
    return column, value


class Subscription:
    def __init__(self, feed: "UpdateFeed", channel: str, table: str, callback: Callback,
                 event: str = ALL_EVENTS, filter: Optional[str] = None):
        self.feed = feed
        self.channel = channel
        self.table = table
        self.callback = callback
        self.event = event
        self.filter = parse_filter(filter)
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        if self.closed or change.table != self.table:
            return False
        if self.event != ALL_EVENTS and change.type.value != self.event:
            return False
        if self.filter is not None:
            column, value = self.filter
            row = change.new or change.old
            if str(row.get(column)) != value:
                return False
        return True

    async def unsubscribe(self):
        await self.feed.remove_channel(self)

    def __repr__(self):
        return f"<Subscription {self.channel} table={self.table} event={self.event}>"


class UpdateFeed:
    """Base class holding the subscriber registry and the dispatch step."""

    def __init__(self):
        self.subscriptions: Set[Subscription] = set()

    async def subscribe(self, channel: str, table: str, callback: Callback,
                        event: str = ALL_EVENTS, filter: Optional[str] = None) -> Subscription:
        sub = Subscription(self, channel, table, callback, event=event, filter=filter)
        self.subscriptions.add(sub)
        await self._attach(sub)
        logger.info("Subscribed channel %s to %s (%s)", channel, table, event)
        return sub

    async def remove_channel(self, sub: Subscription):
        if sub.closed:
            return
        sub.closed = True
        self.subscriptions.discard(sub)
        await self._detach(sub)
        logger.info("Removed channel %s", sub.channel)

    async def publish(self, change: ChangeEvent):
        raise NotImplementedError

    async def close(self):
        for sub in list(self.subscriptions):
            try:
                await self.remove_channel(sub)
            except RemoteError as e:
                logger.warning("Could not release channel %s: %s", sub.channel, e.message)

    async def _attach(self, sub: Subscription):
        pass

    async def _detach(self, sub: Subscription):
        pass

    async def _deliver(self, sub: Subscription, change: ChangeEvent):
        if not sub.matches(change):
            return
        try:
            await sub.callback(change)
        except Exception:
            logger.exception("Feed callback on %s failed", sub.channel)


class LocalFeed(UpdateFeed):
    """In-process feed; each delivery runs as its own task."""

    def __init__(self):
        super().__init__()
        self._tasks: Set[asyncio.Task] = set()

    async def publish(self, change: ChangeEvent):
        for sub in list(self.subscriptions):
            if sub.matches(change):
                task = asyncio.create_task(self._deliver(sub, change))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def drain(self):
        """Wait until every delivery scheduled so far, and any it triggers, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class RedisFeed(UpdateFeed):
    """Feed over Redis pub/sub, one Redis channel per table."""

    def __init__(self, url: str = None, prefix: str = "messenger"):
        super().__init__()
        self.url = url or config.REDIS_URL
        self.prefix = prefix
        self.redis = aioredis.from_url(self.url)
        self._listeners = {}

    def redis_channel(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    async def publish(self, change: ChangeEvent):
        try:
            await self.redis.publish(self.redis_channel(change.table), change.model_dump_json())
        except RedisError as e:
            raise RemoteError(str(e)) from e

    async def _attach(self, sub: Subscription):
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self.redis_channel(sub.table))
        except RedisError as e:
            self.subscriptions.discard(sub)
            sub.closed = True
            raise RemoteError(str(e)) from e
        task = asyncio.create_task(self._listen(sub, pubsub))
        self._listeners[sub] = (pubsub, task)

    async def _detach(self, sub: Subscription):
        pubsub, task = self._listeners.pop(sub, (None, None))
        if task is not None:
            task.cancel()
        if pubsub is not None:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except RedisError as e:
                raise RemoteError(str(e)) from e

    async def _listen(self, sub: Subscription, pubsub):
        async for msg in pubsub.listen():
            if msg is None or msg["type"] != "message":
                continue
            try:
                change = ChangeEvent.model_validate(json.loads(msg["data"]))
            except ValueError:
                logger.warning("Dropping malformed event on %s", self.redis_channel(sub.table))
                continue
            await self._deliver(sub, change)

    async def close(self):
        await super().close()
        await self.redis.aclose()
