"""Browser launch and page setup shared by the worker and the lookup service."""

from collections.abc import Awaitable, Callable

from pyppeteer import launch
from pyppeteer.browser import Browser
from pyppeteer.page import Page
from pyppeteer_stealth import stealth

from app.config import ScraperSettings
from app.errors import BrowserLaunchError
from app.telemetry.logger import get_logger

BrowserFactory = Callable[[], Awaitable[Browser]]

logger = get_logger(__name__)


def make_browser_factory(settings: ScraperSettings) -> BrowserFactory:
    """Return a coroutine function that launches a browser with ``settings``."""

    async def _launch() -> Browser:
        try:
            return await launch(settings.launch_options())
        except Exception as e:
            raise BrowserLaunchError(f"Could not launch browser: {e}") from e

    return _launch


async def prepare_page(page: Page, settings: ScraperSettings) -> Page:
    """Apply stealth patches, viewport and user agent to a fresh page."""
    if settings.use_stealth:
        await stealth(page)
    await page.setViewport(
        {"width": settings.viewport_width, "height": settings.viewport_height}
    )
    await page.setUserAgent(settings.user_agent)
    return page


async def close_quietly(target, what: str = "page") -> None:
    """Close a page or browser, ignoring errors from targets already gone."""
    try:
        await target.close()
    except Exception as e:
        logger.debug(f"Ignoring error while closing {what}: {e}", extra={"operation": "close"})
