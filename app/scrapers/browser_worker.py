"""Browser worker that scrapes maps listings for one town at a time."""

import asyncio
from enum import Enum

from pyppeteer.browser import Browser
from pyppeteer.errors import TimeoutError as PageTimeoutError
from pyppeteer.page import Page
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, stop_any, wait_fixed

from app.config import ScraperSettings
from app.errors import TownScrapeError
from app.models.scraping import ScrapedBusiness
from app.scrapers.browser import BrowserFactory, close_quietly, make_browser_factory, prepare_page
from app.scrapers.control import ScrapeControl
from app.scrapers.maps_parser import (
    CARD_SELECTOR,
    END_OF_LIST_MARKERS,
    FEED_SELECTOR,
    build_search_query,
    build_search_url,
    parse_result_cards,
    parse_single_business,
)
from app.telemetry.logger import get_logger
from app.telemetry.scraper_metrics import ScraperMetrics

SCROLL_FEED_JS = (
    "() => { const feed = document.querySelector('div[role=\"feed\"]');"
    " if (feed) { feed.scrollTop = feed.scrollHeight; } }"
)
COUNT_CARDS_JS = f"() => document.querySelectorAll('{CARD_SELECTOR}').length"
END_OF_LIST_JS = "() => {{ const text = document.body.innerText; return {checks}; }}".format(
    checks=" || ".join(f'text.includes("{marker}")' for marker in END_OF_LIST_MARKERS)
)


class WorkerState(str, Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    EXTRACTING = "extracting"
    SCROLLING = "scrolling"
    STOPPED = "stopped"


class BrowserWorker:
    """Owns one browser and turns a town plus industries into business records.

    A browser is launched per town and closed once the town is done. Every
    page opened is tracked so ``force_stop`` can close it mid-navigation.
    """

    def __init__(
        self,
        worker_id: int,
        control: ScrapeControl,
        settings: ScraperSettings,
        browser_factory: BrowserFactory | None = None,
        simultaneous_industries: int = 2,
        metrics: ScraperMetrics | None = None,
        session_id: str | None = None,
    ):
        """Initialize the worker.

        Args:
            worker_id: Index of the worker in its pool, used in logs
            control: Pause/stop token shared with the orchestrator
            settings: Timeouts and pacing
            browser_factory: Coroutine function that launches a browser
            simultaneous_industries: Industries scraped concurrently per town
            metrics: Session metrics to update
            session_id: Session id for log context
        """
        self.worker_id = worker_id
        self.control = control
        self.settings = settings
        self.browser_factory = browser_factory or make_browser_factory(settings)
        self.simultaneous_industries = max(1, simultaneous_industries)
        self.metrics = metrics or ScraperMetrics(session_id)
        self.session_id = session_id
        self.browser: Browser | None = None
        self.state = WorkerState.IDLE
        self._pages: set[Page] = set()
        self._stopped = False
        self.logger = get_logger(__name__)

    @property
    def stopped(self) -> bool:
        return self._stopped or self.control.stopped

    @property
    def open_pages(self) -> list[Page]:
        return list(self._pages)

    def _log_context(self, **extra) -> dict:
        return {"session_id": self.session_id, "worker_id": self.worker_id, **extra}

    async def _ensure_browser(self) -> Browser:
        if self.browser is None:
            self.browser = await self.browser_factory()
            self.metrics.increment("browsers_launched")
            # Give the browser process a moment before the first navigation
            await asyncio.sleep(self.settings.post_launch_delay)
        return self.browser

    async def process_town(self, town: str, industries: list[str]) -> list[ScrapedBusiness]:
        """Scrape every industry for a town.

        Industries run in batches of ``simultaneous_industries`` with a short
        pause between batches. An empty industry list searches for the town
        string itself.

        Raises:
            TownScrapeError: an industry exhausted its navigation retries
            BrowserLaunchError: the browser could not be started
        """
        if self.stopped:
            return []

        search_terms = industries or [""]
        results: list[ScrapedBusiness] = []
        try:
            await self._ensure_browser()
            for start in range(0, len(search_terms), self.simultaneous_industries):
                if not await self.control.wait_if_paused() or self.stopped:
                    break
                batch = search_terms[start : start + self.simultaneous_industries]
                outcomes = await asyncio.gather(
                    *(self._scrape_industry(town, industry) for industry in batch),
                    return_exceptions=True,
                )
                for industry, outcome in zip(batch, outcomes):
                    if isinstance(outcome, TownScrapeError):
                        raise outcome
                    if isinstance(outcome, BaseException):
                        if not self.stopped:
                            self.logger.warning(
                                f"No results for {industry or town}: {outcome}",
                                extra=self._log_context(operation="industry_failed", town=town),
                            )
                        continue
                    results.extend(outcome)

                more = start + self.simultaneous_industries < len(search_terms)
                if more and not self.stopped:
                    await asyncio.sleep(self.settings.industry_batch_delay)
        finally:
            await self.cleanup()
            if not self._stopped:
                self.state = WorkerState.IDLE

        return results

    async def _scrape_industry(self, town: str, industry: str) -> list[ScrapedBusiness]:
        if self.stopped or self.browser is None:
            return []

        page = await self.browser.newPage()
        self._pages.add(page)
        try:
            await prepare_page(page, self.settings)
            url = build_search_url(build_search_query(industry, town))

            self.state = WorkerState.NAVIGATING
            await self._navigate(page, url, town)
            if self.stopped:
                return []
            await asyncio.sleep(self.settings.page_settle_delay)

            self.state = WorkerState.EXTRACTING
            if await page.querySelector(FEED_SELECTOR) is None:
                business = parse_single_business(await page.content(), town, industry, page.url)
                return [business] if business else []

            await self._scroll_feed(page)
            if self.stopped:
                return []
            businesses = parse_result_cards(await page.content(), town, industry)
            self.logger.info(
                f"Extracted {len(businesses)} businesses",
                extra=self._log_context(operation="industry_complete", town=town, industry=industry),
            )
            return businesses
        finally:
            self._pages.discard(page)
            await close_quietly(page)

    def _stop_requested(self, retry_state) -> bool:
        return self.stopped

    def _before_retry(self, retry_state) -> None:
        self.metrics.increment("navigation_retries")
        self.logger.warning(
            f"Navigation timed out, attempt {retry_state.attempt_number}",
            extra=self._log_context(operation="navigation_retry"),
        )

    async def _navigate(self, page: Page, url: str, town: str) -> None:
        attempts = 1 + self.settings.navigation_extra_attempts
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(PageTimeoutError),
            stop=stop_any(stop_after_attempt(attempts), self._stop_requested),
            wait=wait_fixed(self.settings.navigation_retry_delay),
            before_sleep=self._before_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await page.goto(
                        url,
                        {
                            "waitUntil": "domcontentloaded",
                            "timeout": self.settings.navigation_timeout_ms,
                        },
                    )
        except PageTimeoutError as e:
            raise TownScrapeError(town, f"navigation timed out after {attempts} attempts") from e

    async def _scroll_feed(self, page: Page) -> None:
        """Scroll the results panel until it stops growing or reports its end."""
        previous_count = -1
        stalls = 0
        for _ in range(self.settings.max_scroll_steps):
            if self.stopped:
                return
            self.state = WorkerState.SCROLLING
            await page.evaluate(SCROLL_FEED_JS)
            await asyncio.sleep(self.settings.scroll_settle_delay)
            self.state = WorkerState.EXTRACTING

            if await page.evaluate(END_OF_LIST_JS):
                return
            count = await page.evaluate(COUNT_CARDS_JS)
            if count == previous_count:
                stalls += 1
                if stalls >= self.settings.scroll_stall_limit:
                    return
            else:
                stalls = 0
                previous_count = count

    async def cleanup(self) -> None:
        """Close tracked pages and the browser."""
        pages = list(self._pages)
        self._pages.clear()
        await asyncio.gather(*(close_quietly(page) for page in pages))
        browser, self.browser = self.browser, None
        if browser is not None:
            await close_quietly(browser, "browser")

    async def force_stop(self) -> None:
        """Mark the worker stopped and close everything it has open."""
        self._stopped = True
        self.state = WorkerState.STOPPED
        await self.cleanup()
