"""Durable storage of scrape sessions and their businesses in Redis."""

import json
from datetime import datetime, timezone

import redis.asyncio as redis

from app.errors import SessionNotFoundError
from app.models.scraping import ScrapedBusiness, ScrapeSessionRecord, SessionStatus
from app.telemetry.logger import get_logger

BUSINESS_CHUNK_SIZE = 100
SESSION_INDEX_KEY = "scraping_sessions"


class SessionRepository:
    """Stores ``scraping_sessions`` records and their ``scraped_businesses``.

    Businesses live in a list per session and are appended in chunks of at
    most 100 records. Deleting a session deletes its businesses too.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client
        self.logger = get_logger(__name__)

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"scraping_sessions:{session_id}"

    @staticmethod
    def _businesses_key(session_id: str) -> str:
        return f"scraped_businesses:{session_id}"

    async def save_session(self, record: ScrapeSessionRecord) -> None:
        record.updated_at = datetime.now(timezone.utc)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(self._session_key(record.id), record.model_dump_json())
            pipe.sadd(SESSION_INDEX_KEY, record.id)
            await pipe.execute()
        self.logger.info(
            f"Saved session with status {record.status.value}",
            extra={"operation": "session_save", "session_id": record.id},
        )

    async def load_session(self, session_id: str) -> ScrapeSessionRecord | None:
        raw = await self.redis_client.get(self._session_key(session_id))
        if raw is None:
            return None
        return ScrapeSessionRecord.model_validate_json(raw)

    async def update_progress(
        self, session_id: str, progress: int, status: SessionStatus | None = None
    ) -> ScrapeSessionRecord:
        record = await self.load_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        record.progress = progress
        if status is not None:
            record.status = status
        await self.save_session(record)
        return record

    async def save_businesses(self, session_id: str, businesses: list[ScrapedBusiness]) -> int:
        """Replace the stored businesses for a session.

        Returns:
            Number of chunks written
        """
        key = self._businesses_key(session_id)
        await self.redis_client.delete(key)
        chunks = 0
        for start in range(0, len(businesses), BUSINESS_CHUNK_SIZE):
            chunk = businesses[start : start + BUSINESS_CHUNK_SIZE]
            await self.redis_client.rpush(key, *[b.model_dump_json() for b in chunk])
            chunks += 1
        self.logger.info(
            f"Saved {len(businesses)} businesses in {chunks} chunks",
            extra={"operation": "businesses_save", "session_id": session_id},
        )
        return chunks

    async def load_businesses(self, session_id: str) -> list[ScrapedBusiness]:
        raws = await self.redis_client.lrange(self._businesses_key(session_id), 0, -1)
        return [ScrapedBusiness(**json.loads(raw)) for raw in raws]

    async def delete_session(self, session_id: str) -> bool:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(self._session_key(session_id))
            pipe.delete(self._businesses_key(session_id))
            pipe.srem(SESSION_INDEX_KEY, session_id)
            deleted, _, _ = await pipe.execute()
        return bool(deleted)

    async def list_session_ids(self) -> list[str]:
        ids = await self.redis_client.smembers(SESSION_INDEX_KEY)
        return sorted(i.decode() if isinstance(i, bytes) else i for i in ids)
