"""Durable queue of failed operations, retried out of band."""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis

from app.models.scraping import RetryItemStatus, RetryQueueItem
from app.telemetry.logger import get_logger

RetryHandler = Callable[[RetryQueueItem], Awaitable[bool]]

KEY_PREFIX = "retry_queue"


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RetryQueue:
    """Redis-backed retry queue.

    Pending items live in a sorted set scored by ``next_retry_time``. Items
    that run out of attempts are marked failed and moved to a separate set
    so they stay available for audit. Successful items are deleted.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.clock = clock
        self.logger = get_logger(__name__)
        self._sweeper: asyncio.Task | None = None

    @staticmethod
    def _item_key(item_id: str) -> str:
        return f"{KEY_PREFIX}:item:{item_id}"

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{KEY_PREFIX}:session:{session_id}"

    def _next_retry_time(self, attempts: int) -> float:
        return self.clock() + self.base_delay * 2**attempts

    async def _save(self, item: RetryQueueItem) -> None:
        await self.redis_client.set(self._item_key(item.id), item.model_dump_json())

    async def enqueue(
        self,
        item_type: str,
        payload: dict[str, Any],
        session_id: str | None = None,
        error: str | None = None,
    ) -> RetryQueueItem:
        """Add a failed operation to the queue.

        Args:
            item_type: Operation kind, used to pick a handler
            payload: Data the handler needs, e.g. ``{"phone": "0821234567"}``
            session_id: Session that produced the failure
            error: Last error message

        Returns:
            The stored item
        """
        item = RetryQueueItem(
            id=uuid.uuid4().hex,
            item_type=item_type,
            payload=payload,
            session_id=session_id,
            max_attempts=self.max_attempts,
            next_retry_time=self._next_retry_time(0),
            last_error=error,
        )
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(self._item_key(item.id), item.model_dump_json())
            pipe.zadd(f"{KEY_PREFIX}:pending", {item.id: item.next_retry_time})
            if session_id:
                pipe.sadd(self._session_key(session_id), item.id)
            await pipe.execute()

        self.logger.info(
            f"Queued {item_type} for retry",
            extra={"operation": "retry_enqueue", "session_id": session_id, "item_id": item.id},
        )
        return item

    async def get_item(self, item_id: str) -> RetryQueueItem | None:
        raw = await self.redis_client.get(self._item_key(item_id))
        if raw is None:
            return None
        return RetryQueueItem.model_validate_json(raw)

    async def _load_many(self, item_ids: list[Any]) -> list[RetryQueueItem]:
        if not item_ids:
            return []
        raws = await self.redis_client.mget([self._item_key(_decode(i)) for i in item_ids])
        return [RetryQueueItem.model_validate_json(raw) for raw in raws if raw is not None]

    async def get_due(self, now: float | None = None, limit: int = 50) -> list[RetryQueueItem]:
        """Pending items whose retry time has passed, oldest first."""
        now = self.clock() if now is None else now
        item_ids = await self.redis_client.zrangebyscore(
            f"{KEY_PREFIX}:pending", "-inf", now, start=0, num=limit
        )
        return await self._load_many(item_ids)

    async def record_success(self, item: RetryQueueItem) -> None:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(self._item_key(item.id))
            pipe.zrem(f"{KEY_PREFIX}:pending", item.id)
            if item.session_id:
                pipe.srem(self._session_key(item.session_id), item.id)
            await pipe.execute()

    async def record_failure(self, item: RetryQueueItem, error: str | None = None) -> RetryQueueItem:
        """Count a failed retry and either reschedule or mark the item failed."""
        item.attempts += 1
        item.last_error = error

        if item.attempts >= item.max_attempts:
            item.status = RetryItemStatus.FAILED
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._item_key(item.id), item.model_dump_json())
                pipe.zrem(f"{KEY_PREFIX}:pending", item.id)
                pipe.sadd(f"{KEY_PREFIX}:failed", item.id)
                await pipe.execute()
            self.logger.warning(
                f"Retry item permanently failed after {item.attempts} attempts",
                extra={"operation": "retry_failed", "item_id": item.id},
            )
            return item

        item.next_retry_time = self._next_retry_time(item.attempts)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(self._item_key(item.id), item.model_dump_json())
            pipe.zadd(f"{KEY_PREFIX}:pending", {item.id: item.next_retry_time})
            await pipe.execute()
        return item

    async def process_due(self, handlers: dict[str, RetryHandler]) -> dict[str, int]:
        """Run every due item through the handler registered for its type.

        A handler returns True on success. Returning False or raising counts
        as a failed attempt.

        Returns:
            Counts of succeeded, retrying and failed items
        """
        counts = {"succeeded": 0, "retrying": 0, "failed": 0}
        for item in await self.get_due():
            handler = handlers.get(item.item_type)
            error = None
            ok = False
            if handler is None:
                error = f"No handler for item type {item.item_type}"
            else:
                try:
                    ok = await handler(item)
                except Exception as e:
                    error = str(e)

            if ok:
                await self.record_success(item)
                counts["succeeded"] += 1
                continue

            updated = await self.record_failure(item, error)
            if updated.status == RetryItemStatus.FAILED:
                counts["failed"] += 1
            else:
                counts["retrying"] += 1
        return counts

    async def get_failed(self) -> list[RetryQueueItem]:
        return await self._load_many(list(await self.redis_client.smembers(f"{KEY_PREFIX}:failed")))

    async def get_session_items(self, session_id: str) -> list[RetryQueueItem]:
        item_ids = await self.redis_client.smembers(self._session_key(session_id))
        return await self._load_many(list(item_ids))

    async def size(self) -> int:
        return await self.redis_client.zcard(f"{KEY_PREFIX}:pending")

    async def get_stats(self) -> dict[str, int]:
        now = self.clock()
        return {
            "pending": await self.redis_client.zcard(f"{KEY_PREFIX}:pending"),
            "due": await self.redis_client.zcount(f"{KEY_PREFIX}:pending", "-inf", now),
            "failed": await self.redis_client.scard(f"{KEY_PREFIX}:failed"),
        }

    async def clear_session(self, session_id: str) -> int:
        """Drop every item that belongs to a session."""
        item_ids = [_decode(i) for i in await self.redis_client.smembers(self._session_key(session_id))]
        if not item_ids:
            return 0
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._item_key(i) for i in item_ids])
            pipe.zrem(f"{KEY_PREFIX}:pending", *item_ids)
            pipe.srem(f"{KEY_PREFIX}:failed", *item_ids)
            pipe.delete(self._session_key(session_id))
            await pipe.execute()
        return len(item_ids)

    def start_sweeper(self, handlers: dict[str, RetryHandler], interval: float = 30.0) -> None:
        """Start a background task that processes due items every ``interval`` seconds."""
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(handlers, interval))

    async def stop_sweeper(self) -> None:
        if not self._sweeper:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self, handlers: dict[str, RetryHandler], interval: float) -> None:
        while True:
            try:
                counts = await self.process_due(handlers)
                if any(counts.values()):
                    self.logger.info(
                        "Retry sweep finished",
                        extra={"operation": "retry_sweep", **counts},
                    )
            except redis.RedisError as e:
                self.logger.error(f"Retry sweep failed: {e}", extra={"operation": "retry_sweep"})
            await asyncio.sleep(interval)
