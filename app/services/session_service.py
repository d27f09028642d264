"""Service for starting, pausing, resuming and stopping scrape sessions."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis

from app.cache.provider_cache import ProviderCache
from app.config import ScraperSettings, get_settings
from app.errors import ScraperError, SessionNotFoundError
from app.events import EventChannel, EventSubscription
from app.models.scraping import (
    ScrapeConfig,
    ScrapedBusiness,
    ScrapeSessionRecord,
    ScrapeState,
    SessionStatus,
    build_session_name,
)
from app.resilience.retry_queue import RetryQueue
from app.scrapers.browser import BrowserFactory
from app.scrapers.captcha_detector import CaptchaDetector
from app.services.provider_lookup_service import RETRY_ITEM_TYPE, ProviderLookupService
from app.services.scraping_orchestrator import ScrapingOrchestrator, WorkerFactory
from app.services.session_store import SessionStore
from app.storage.session_repository import SessionRepository
from app.telemetry.logger import get_logger
from app.telemetry.scraper_metrics import ScraperMetrics


class ScrapeSessionService:
    """Owns the session registry and the durable session records."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        settings: ScraperSettings | None = None,
        store: SessionStore | None = None,
        browser_factory: BrowserFactory | None = None,
        worker_factory: WorkerFactory | None = None,
    ):
        """Initialize the service.

        Args:
            redis_client: Optional Redis client; without it nothing is persisted
            settings: Scraper settings
            store: Session registry, normally shared by the whole process
            browser_factory: Overrides how browsers are launched
            worker_factory: Overrides how town workers are built
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.store = store or SessionStore(
            completed_ttl=self.settings.completed_session_ttl,
            stale_ttl=self.settings.stale_session_ttl,
            shutdown_timeout=self.settings.stop_grace_period,
        )
        self.browser_factory = browser_factory
        self.worker_factory = worker_factory
        self.logger = get_logger(__name__)

        self.repository: SessionRepository | None = None
        self.cache: ProviderCache | None = None
        self.retry_queue: RetryQueue | None = None
        if redis_client is not None:
            self.repository = SessionRepository(redis_client)
            self.cache = ProviderCache(redis_client, ttl_days=self.settings.provider_cache_ttl_days)
            self.retry_queue = RetryQueue(
                redis_client,
                max_attempts=self.settings.retry_queue_max_attempts,
                base_delay=self.settings.retry_queue_base_delay,
            )

    def _build_orchestrator(
        self,
        session_id: str,
        towns: list[str],
        industries: list[str],
        config: ScrapeConfig,
        checkpoint: ScrapeState | None = None,
    ) -> ScrapingOrchestrator:
        events = EventChannel()
        metrics = ScraperMetrics(session_id)
        captcha_enabled = (
            config.enable_captcha_detection
            if config.enable_captcha_detection is not None
            else self.settings.captcha_detection_enabled
        )
        provider_service = ProviderLookupService(
            self.settings,
            cache=self.cache,
            retry_queue=self.retry_queue,
            browser_factory=self.browser_factory,
            captcha_detector=CaptchaDetector() if captcha_enabled else None,
            max_concurrent_batches=config.simultaneous_lookups,
            events=events,
            metrics=metrics,
            session_id=session_id,
        )
        return ScrapingOrchestrator(
            towns,
            industries,
            config,
            settings=self.settings,
            session_id=session_id,
            worker_factory=self.worker_factory,
            browser_factory=self.browser_factory,
            provider_service=provider_service,
            events=events,
            metrics=metrics,
            checkpoint=checkpoint,
        )

    async def start_session(
        self,
        towns: list[str],
        industries: list[str],
        config: ScrapeConfig | None = None,
    ) -> ScrapeSessionRecord:
        """Create a session and start scraping in the background.

        Args:
            towns: Towns to search
            industries: Industries to search in each town; empty means a
                direct business search for each town string

        Returns:
            The new session record
        """
        towns = [t.strip() for t in towns if t and t.strip()]
        if not towns:
            raise ValueError("At least one town is required")
        industries = [i.strip() for i in industries if i and i.strip()]
        config = config or ScrapeConfig()

        record = ScrapeSessionRecord(
            id=uuid.uuid4().hex,
            name=build_session_name(towns, industries),
            towns=towns,
            industries=industries,
            config=config,
        )
        orchestrator = self._build_orchestrator(record.id, towns, industries, config)
        if self.repository is not None:
            await self.repository.save_session(record)

        self._launch(record, orchestrator)
        self.logger.info(
            f"Scrape session started: {record.name}",
            extra={"operation": "session_start", "session_id": record.id},
        )
        return record

    def _launch(self, record: ScrapeSessionRecord, orchestrator: ScrapingOrchestrator) -> None:
        task = asyncio.create_task(self._run(record, orchestrator))
        self.store.set(record.id, orchestrator, task)

    async def _run(self, record: ScrapeSessionRecord, orchestrator: ScrapingOrchestrator) -> None:
        try:
            if orchestrator.status is None:
                await orchestrator.start()
        except Exception:
            self.logger.exception(
                "Scrape session crashed",
                extra={"operation": "session_run", "session_id": record.id},
            )
        try:
            await self._persist(record.id, orchestrator, final=True)
        except redis.RedisError as e:
            self.logger.error(
                f"Could not persist finished session: {e}",
                extra={"operation": "session_persist", "session_id": record.id},
            )
        self.store.mark_complete(record.id)

    async def _persist(
        self, session_id: str, orchestrator: ScrapingOrchestrator, final: bool = False
    ) -> ScrapeSessionRecord | None:
        if self.repository is None:
            return None
        record = await self.repository.load_session(session_id)
        if record is None:
            record = ScrapeSessionRecord(
                id=session_id,
                name=build_session_name(orchestrator.towns, orchestrator.industries),
                towns=orchestrator.towns,
                industries=orchestrator.industries,
                config=orchestrator.config,
            )
        record.status = orchestrator.status or SessionStatus.ERROR
        record.progress = orchestrator.get_progress().percentage
        record.state = orchestrator.checkpoint()
        record.summary = orchestrator.get_summary()
        if final:
            record.completed_at = datetime.now(timezone.utc)
            await self.repository.save_businesses(session_id, orchestrator.get_results())
        await self.repository.save_session(record)
        return record

    def _active(self, session_id: str) -> ScrapingOrchestrator:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session.orchestrator

    async def pause_session(self, session_id: str) -> ScrapeSessionRecord | None:
        """Pause a running session and persist its resume cursor."""
        orchestrator = self._active(session_id)
        orchestrator.pause()
        self.store.touch(session_id)
        try:
            return await self._persist(session_id, orchestrator)
        except redis.RedisError as e:
            self.logger.error(
                f"Could not persist paused session: {e}",
                extra={"operation": "session_pause", "session_id": session_id},
            )
            raise

    async def resume_session(self, session_id: str) -> SessionStatus:
        """Resume a paused session, rebuilding it from storage if it is not in memory."""
        session = self.store.get(session_id)
        if session is not None and session.orchestrator.status == SessionStatus.PAUSED:
            session.orchestrator.resume()
            self.store.touch(session_id)
            await self._persist(session_id, session.orchestrator)
            return SessionStatus.RUNNING

        if self.repository is None:
            raise SessionNotFoundError(session_id)
        record = await self.repository.load_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        if record.status != SessionStatus.PAUSED:
            raise ScraperError(f"Session {session_id} is {record.status.value}, not paused")

        orchestrator = self._build_orchestrator(
            record.id, record.towns, record.industries, record.config, checkpoint=record.state
        )
        record.status = SessionStatus.RUNNING
        await self.repository.save_session(record)
        self._launch(record, orchestrator)
        self.logger.info(
            "Scrape session resumed from checkpoint",
            extra={"operation": "session_resume", "session_id": session_id},
        )
        return SessionStatus.RUNNING

    async def stop_session(self, session_id: str) -> None:
        """Force-stop a session; partial results are persisted."""
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        await session.orchestrator.stop()
        if session.task is not None:
            await session.task

    async def get_status(self, session_id: str) -> dict[str, Any]:
        session = self.store.get(session_id)
        if session is not None:
            orchestrator = session.orchestrator
            return {
                "session_id": session_id,
                "status": orchestrator.status.value if orchestrator.status else None,
                "progress": orchestrator.get_progress().model_dump(),
                "summary": orchestrator.get_summary().model_dump(),
            }

        record = await self.repository.load_session(session_id) if self.repository else None
        if record is None:
            raise SessionNotFoundError(session_id)
        return {
            "session_id": session_id,
            "status": record.status.value,
            "progress": {"percentage": record.progress},
            "summary": record.summary.model_dump() if record.summary else None,
        }

    async def get_results(self, session_id: str) -> list[ScrapedBusiness]:
        session = self.store.get(session_id)
        if session is not None:
            return session.orchestrator.get_results()
        if self.repository is None:
            raise SessionNotFoundError(session_id)
        return await self.repository.load_businesses(session_id)

    def subscribe(self, session_id: str) -> EventSubscription:
        return self._active(session_id).events.subscribe()

    async def retry_failed_towns(self, session_id: str) -> ScrapeSessionRecord:
        """Start a new session over the towns that failed in ``session_id``."""
        session = self.store.get(session_id)
        if session is not None:
            orchestrator = session.orchestrator
            failed = [f.town for f in orchestrator.get_failed_towns()]
            industries, config = orchestrator.industries, orchestrator.config
        else:
            record = await self.repository.load_session(session_id) if self.repository else None
            if record is None:
                raise SessionNotFoundError(session_id)
            failed = [f.town for f in record.state.failed_towns] if record.state else []
            industries, config = record.industries, record.config

        if not failed:
            raise ScraperError(f"Session {session_id} has no failed towns")
        return await self.start_session(failed, industries, config)

    async def delete_session(self, session_id: str) -> bool:
        session = self.store.get(session_id)
        if session is not None and not (
            session.orchestrator.status and session.orchestrator.status.is_terminal
        ):
            await self.stop_session(session_id)
        deleted = self.store.delete(session_id)
        if self.repository is not None:
            deleted = await self.repository.delete_session(session_id) or deleted
        if self.retry_queue is not None:
            await self.retry_queue.clear_session(session_id)
        return deleted

    def start_background_tasks(self) -> None:
        """Start session eviction and the retry-queue sweep."""
        self.store.start_eviction(self.settings.session_sweep_interval)
        if self.retry_queue is not None:
            lookup_service = ProviderLookupService(
                self.settings, cache=self.cache, browser_factory=self.browser_factory
            )
            self.retry_queue.start_sweeper(
                {RETRY_ITEM_TYPE: lookup_service.retry_item}, self.settings.retry_sweep_interval
            )

    async def shutdown(self) -> None:
        for session_id in self.store.session_ids():
            session = self.store.get(session_id)
            if session and not (session.orchestrator.status and session.orchestrator.status.is_terminal):
                await self.stop_session(session_id)
        await self.store.stop_eviction()
        if self.retry_queue is not None:
            await self.retry_queue.stop_sweeper()
