"""Shared fixtures: fake pyppeteer objects, fake workers and an in-memory Redis."""

import asyncio
from collections.abc import Callable

import fakeredis
import pytest
import pytest_asyncio
from pyppeteer.errors import PageError

from app.config import ScraperSettings
from app.errors import BrowserLaunchError, TownScrapeError
from app.models.scraping import ScrapedBusiness


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakePage:
    """Stand-in for a pyppeteer Page driven by a ``responder(url) -> html`` callable."""

    def __init__(
        self,
        responder: Callable[[str], str],
        feed: bool = True,
        block: bool = False,
        card_counts: list[int] | None = None,
        end_of_list: bool = False,
    ):
        self.responder = responder
        self.feed = feed
        self.block = block
        self.url = ""
        self.html = ""
        self.closed = False
        self.goto_calls: list[str] = []
        self.evaluate_calls = 0
        self.card_counts = list(card_counts or [])
        self.end_of_list = end_of_list
        self._closed_event = asyncio.Event()

    async def setViewport(self, viewport):
        return None

    async def setUserAgent(self, user_agent):
        return None

    async def goto(self, url, options=None):
        self.goto_calls.append(url)
        if self.block:
            await self._closed_event.wait()
            raise PageError("Target closed")
        if self.closed:
            raise PageError("Target closed")
        self.url = url
        self.html = self.responder(url)
        return FakeResponse()

    async def waitForSelector(self, selector, options=None):
        return object()

    async def querySelector(self, selector):
        return object() if self.feed else None

    async def evaluate(self, script):
        self.evaluate_calls += 1
        if "scrollTop" in script:
            return None
        if "innerText" in script:
            return self.end_of_list
        if ".length" in script:
            return self.card_counts.pop(0) if self.card_counts else 0
        return None

    async def content(self):
        if self.closed:
            raise PageError("Target closed")
        return self.html

    async def close(self):
        self.closed = True
        self._closed_event.set()


class FakeBrowser:
    def __init__(self, page_factory: Callable[[], FakePage]):
        self.page_factory = page_factory
        self.pages: list[FakePage] = []
        self.closed = False

    async def newPage(self):
        if self.closed:
            raise PageError("Browser closed")
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowserFactory:
    """Callable used in place of ``launch``; remembers every browser it made."""

    def __init__(
        self,
        responder: Callable[[str], str] | None = None,
        fail_launches: tuple[int, ...] = (),
        **page_options,
    ):
        self.responder = responder or (lambda url: "<html></html>")
        self.page_options = page_options
        self.browsers: list[FakeBrowser] = []
        self.fail_launch = False
        self.fail_launches = set(fail_launches)
        self.launches = 0

    def _make_page(self) -> FakePage:
        return FakePage(self.responder, **self.page_options)

    async def __call__(self):
        self.launches += 1
        if self.fail_launch or self.launches in self.fail_launches:
            raise BrowserLaunchError("Could not launch browser: no chromium")
        browser = FakeBrowser(self._make_page)
        self.browsers.append(browser)
        return browser

    @property
    def pages(self) -> list[FakePage]:
        return [page for browser in self.browsers for page in browser.pages]

    @property
    def navigations(self) -> int:
        return sum(len(page.goto_calls) for page in self.pages)


class FakeWorker:
    def __init__(self, pool: "FakeWorkerPool", worker_id: int, control):
        self.pool = pool
        self.worker_id = worker_id
        self.control = control
        self.stopped = False

    async def process_town(self, town, industries):
        await asyncio.sleep(0)
        if self.pool.on_town is not None:
            await self.pool.on_town(town)
        if self.pool.launch_error:
            raise BrowserLaunchError("Could not launch browser")
        if town in self.pool.fail_towns:
            raise TownScrapeError(town, "navigation timed out after 3 attempts")
        self.pool.processed.append(town)
        return [
            ScrapedBusiness(
                name=f"{industry} of {town}",
                phone=f"082{abs(hash((town, industry))) % 10_000_000:07d}",
                town=town,
                industry=industry,
            )
            for industry in industries
        ]

    async def force_stop(self):
        self.stopped = True


class FakeWorkerPool:
    """Worker factory for orchestrator tests."""

    def __init__(self, fail_towns=(), on_town=None, launch_error: bool = False):
        self.fail_towns = set(fail_towns)
        self.on_town = on_town
        self.launch_error = launch_error
        self.processed: list[str] = []
        self.workers: list[FakeWorker] = []

    def __call__(self, worker_id, control):
        worker = FakeWorker(self, worker_id, control)
        self.workers.append(worker)
        return worker


@pytest.fixture
def settings():
    """Settings with every delay set to zero."""
    return ScraperSettings(
        use_stealth=False,
        post_launch_delay=0,
        page_settle_delay=0,
        industry_batch_delay=0,
        navigation_retry_delay=0,
        scroll_settle_delay=0,
        lookup_delay=0,
        inter_batch_delay_min=0,
        inter_batch_delay_max=0,
        retry_base_delay=0,
        stop_grace_period=2,
    )


@pytest.fixture
def fake_page_cls():
    return FakePage


@pytest.fixture
def browser_factory_cls():
    return FakeBrowserFactory


@pytest.fixture
def worker_pool_cls():
    return FakeWorkerPool


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()
