"""Carrier lookups for phone numbers against the public porting database."""

import asyncio
import re

import redis.asyncio as redis
from bs4 import BeautifulSoup
from pyppeteer.browser import Browser
from pyppeteer.page import Page

from app.cache.provider_cache import ProviderCache
from app.config import ScraperSettings
from app.errors import BrowserLaunchError, CaptchaDetectedError
from app.events import EventChannel, EventType
from app.models.scraping import UNKNOWN_PROVIDER, RetryQueueItem
from app.resilience.batch_manager import BatchManager
from app.resilience.retry_queue import RetryQueue
from app.resilience.retry_strategy import RetryStrategy
from app.scrapers.browser import BrowserFactory, close_quietly, make_browser_factory, prepare_page
from app.scrapers.captcha_detector import CaptchaAction, CaptchaDetection, CaptchaDetector
from app.scrapers.maps_parser import clean_phone
from app.telemetry.logger import get_logger
from app.telemetry.scraper_metrics import ScraperMetrics

LOOKUP_URL = "https://www.porting.co.za/PublicWebsite/crdb?msisdn={msisdn}"
RESULT_SELECTOR = "span.p1"
RETRY_ITEM_TYPE = "provider_lookup"

_SERVICED_BY = re.compile(r"serviced by\s+(\S+)", re.IGNORECASE)


def parse_provider(text: str) -> str:
    """Return the carrier named after "serviced by", or ``Unknown``."""
    match = _SERVICED_BY.search(text or "")
    if not match:
        return UNKNOWN_PROVIDER
    provider = match.group(1).rstrip(".,;:!?")
    return provider or UNKNOWN_PROVIDER


class ProviderLookupService:
    """Resolve phone numbers to carriers.

    One browser serves a whole batch of up to five numbers and is closed
    afterwards; each number gets a fresh page within that browser. Batch
    size comes from the BatchManager and batches are spaced by a random
    delay.
    """

    def __init__(
        self,
        settings: ScraperSettings,
        cache: ProviderCache | None = None,
        retry_queue: RetryQueue | None = None,
        batch_manager: BatchManager | None = None,
        retry_strategy: RetryStrategy | None = None,
        browser_factory: BrowserFactory | None = None,
        captcha_detector: CaptchaDetector | None = None,
        max_concurrent_batches: int = 1,
        events: EventChannel | None = None,
        metrics: ScraperMetrics | None = None,
        session_id: str | None = None,
    ):
        self.settings = settings
        self.cache = cache
        self.retry_queue = retry_queue
        self.batch_manager = batch_manager or BatchManager(
            min_size=settings.lookup_batch_min,
            max_size=settings.lookup_batch_max,
            inter_batch_delay=(settings.inter_batch_delay_min, settings.inter_batch_delay_max),
        )
        self.metrics = metrics or ScraperMetrics(session_id)
        self.retry_strategy = retry_strategy or RetryStrategy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            never_retry=(CaptchaDetectedError,),
        )
        self.browser_factory = browser_factory or make_browser_factory(settings)
        self.captcha_detector = captcha_detector
        self.max_concurrent_batches = max(1, max_concurrent_batches)
        self.events = events
        self.session_id = session_id
        self.captcha_detected = False
        self._aborted = False
        self._cancelled = False
        self.logger = get_logger(__name__)

    async def lookup_providers(self, phone_numbers: list[str]) -> dict[str, str]:
        """Resolve carriers for the given numbers.

        Args:
            phone_numbers: Numbers as scraped; blanks and duplicates are ignored

        Returns:
            Mapping of each number to its carrier or ``Unknown``
        """
        unique = list(dict.fromkeys(p for p in phone_numbers if clean_phone(p)))
        if not unique:
            return {}

        self._aborted = False
        results: dict[str, str] = {}
        if self.cache is not None:
            results.update(await self.cache.get_many(unique))
        cache_hits = len(results)
        pending = [p for p in unique if p not in results]
        self.metrics.record_cache(cache_hits, len(pending))

        self.logger.info(
            f"Looking up {len(pending)} numbers, {cache_hits} served from cache",
            extra={"operation": "lookup_start", "session_id": self.session_id},
        )
        self._publish_progress(len(results), len(unique), cache_hits)

        while pending and not self._aborted:
            size = self.batch_manager.get_next_batch_size()
            take = size * self.max_concurrent_batches
            group = self.batch_manager.create_batches(pending[:take], size)
            pending = pending[take:]

            for found in await asyncio.gather(*(self._run_batch(batch) for batch in group)):
                results.update(found)
            self._publish_progress(len(results), len(unique), cache_hits)

            if pending and not self._aborted:
                await asyncio.sleep(self.batch_manager.get_inter_batch_delay())

        for phone in pending:
            results[phone] = UNKNOWN_PROVIDER
            if not self._cancelled:
                await self._enqueue_retry(phone, "lookups aborted after anti-bot challenge")

        return {phone: results.get(phone, UNKNOWN_PROVIDER) for phone in unique}

    def cancel(self) -> None:
        """Stop issuing lookups; numbers not yet resolved come back as Unknown."""
        self._cancelled = True
        self._aborted = True

    def _publish_progress(self, completed: int, total: int, cache_hits: int) -> None:
        if self.events is not None:
            self.events.publish(
                EventType.LOOKUP_PROGRESS, completed=completed, total=total, cache_hits=cache_hits
            )

    async def _run_batch(self, batch: list[str]) -> dict[str, str]:
        """Look up a batch of numbers with a single browser."""
        try:
            browser = await self.browser_factory()
        except BrowserLaunchError as e:
            return await self._fail_batch(batch, e)
        self.metrics.increment("browsers_launched")
        found: dict[str, str] = {}
        successes = 0
        failures = 0

        try:
            for index, phone in enumerate(batch):
                if self._cancelled:
                    break
                try:
                    provider = await self._lookup_with_retries(browser, phone)
                except CaptchaDetectedError as e:
                    self._handle_captcha(e)
                    for skipped in batch[index:]:
                        found[skipped] = UNKNOWN_PROVIDER
                        if not self._cancelled:
                            await self._enqueue_retry(skipped, str(e))
                    break
                except Exception as e:
                    failures += 1
                    found[phone] = UNKNOWN_PROVIDER
                    self.metrics.increment("lookup_failures")
                    self.logger.warning(
                        f"Lookup failed after retries: {e}",
                        extra={"operation": "lookup_failed", "session_id": self.session_id},
                    )
                    await self._enqueue_retry(phone, str(e))
                else:
                    successes += 1
                    found[phone] = provider

                if index < len(batch) - 1:
                    await asyncio.sleep(self.settings.lookup_delay)
        finally:
            await close_quietly(browser, "browser")

        self.batch_manager.record_batch(len(batch), successes)
        if self.captcha_detector is not None and failures:
            self._apply_detection(self.captcha_detector.check_failed_lookup_rate(failures, len(batch)))

        resolved = {p: v for p, v in found.items() if v != UNKNOWN_PROVIDER}
        if self.cache is not None and resolved:
            await self.cache.set_many(resolved)
        return found

    async def _fail_batch(self, batch: list[str], error: BrowserLaunchError) -> dict[str, str]:
        """Every number in a batch whose browser never started is Unknown and queued."""
        self.metrics.increment("lookup_failures", len(batch))
        self.logger.error(
            f"Could not launch lookup browser for {len(batch)} numbers: {error}",
            extra={"operation": "lookup_launch_failed", "session_id": self.session_id},
        )
        for phone in batch:
            await self._enqueue_retry(phone, str(error))
        self.batch_manager.record_batch(len(batch), 0)
        return {phone: UNKNOWN_PROVIDER for phone in batch}

    async def _lookup_with_retries(self, browser: Browser, phone: str) -> str:
        """Retries reuse the same page within the batch browser."""
        page = await browser.newPage()
        try:
            await prepare_page(page, self.settings)
            return await self.retry_strategy.execute(self._query, page, phone)
        finally:
            await close_quietly(page)

    async def _lookup_one(self, browser: Browser, phone: str) -> str:
        page = await browser.newPage()
        try:
            await prepare_page(page, self.settings)
            return await self._query(page, phone)
        finally:
            await close_quietly(page)

    async def _query(self, page: Page, phone: str) -> str:
        self.metrics.increment("lookups_performed")
        response = await page.goto(
            LOOKUP_URL.format(msisdn=clean_phone(phone)),
            {"waitUntil": "networkidle0", "timeout": self.settings.lookup_navigation_timeout_ms},
        )

        if self.captcha_detector is not None:
            detection = self.captcha_detector.check_status_code(getattr(response, "status", None))
            if not detection.detected:
                detection = await self.captcha_detector.detect(page)
            if detection.detected:
                raise CaptchaDetectedError("Anti-bot challenge on lookup page", detection.indicators)

        await page.waitForSelector(RESULT_SELECTOR, {"timeout": self.settings.element_timeout_ms})
        soup = BeautifulSoup(await page.content(), "html.parser")
        result = soup.select_one(RESULT_SELECTOR)
        return parse_provider(result.get_text(" ", strip=True) if result else "")

    def _handle_captcha(self, error: CaptchaDetectedError) -> None:
        self.captcha_detected = True
        self.metrics.increment("captcha_detections")
        self.logger.warning(
            "Lookup batch aborted after anti-bot challenge",
            extra={"operation": "captcha_detected", "session_id": self.session_id},
        )
        if self.events is not None:
            self.events.publish(EventType.CAPTCHA_DETECTED, indicators=error.indicators)
        self._apply_detection(CaptchaDetection(detected=True, indicators=error.indicators))

    def _apply_detection(self, detection: CaptchaDetection) -> None:
        if self.captcha_detector is not None:
            action = self.captcha_detector.recommend_action(detection)
        else:
            action = detection.action
        if action is None:
            return
        if action == CaptchaAction.REDUCE_BATCH_SIZE:
            self.batch_manager.shrink_to_floor()
        elif action == CaptchaAction.INCREASE_DELAY:
            self.batch_manager.increase_delay(1.5)
        elif action == CaptchaAction.STOP:
            self.logger.error(
                "Repeated anti-bot challenges, abandoning remaining lookups",
                extra={"operation": "captcha_stop", "session_id": self.session_id},
            )
            self.cancel()
        else:
            self._aborted = True

    async def _enqueue_retry(self, phone: str, error: str) -> None:
        if self.retry_queue is None:
            return
        try:
            await self.retry_queue.enqueue(
                RETRY_ITEM_TYPE, {"phone": phone}, session_id=self.session_id, error=error
            )
            self.metrics.increment("retry_queue_enqueued")
        except redis.RedisError as e:
            self.logger.error(
                f"Could not queue lookup for retry: {e}",
                extra={"operation": "retry_enqueue", "session_id": self.session_id},
            )

    async def retry_item(self, item: RetryQueueItem) -> bool:
        """RetryQueue handler: a one-number batch that caches on success."""
        phone = item.payload.get("phone", "")
        if not clean_phone(phone):
            return False
        browser = await self.browser_factory()
        try:
            provider = await self._lookup_one(browser, phone)
        finally:
            await close_quietly(browser, "browser")
        if provider == UNKNOWN_PROVIDER:
            return False
        if self.cache is not None:
            await self.cache.set(phone, provider)
        return True
