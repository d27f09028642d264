"""Exception types raised by the scraping core."""


class ScraperError(Exception):
    """Base class for scraper errors."""


class BrowserLaunchError(ScraperError):
    """A browser instance could not be started."""


class TownScrapeError(ScraperError):
    """A town exhausted its navigation retries."""

    def __init__(self, town: str, message: str):
        super().__init__(f"{town}: {message}")
        self.town = town


class CaptchaDetectedError(ScraperError):
    """An anti-bot challenge was found on the page."""

    def __init__(self, message: str, indicators: list[str] | None = None):
        super().__init__(message)
        self.indicators = indicators or []


class InvalidStatusTransitionError(ScraperError):
    """A session status change is not allowed."""


class SessionNotFoundError(ScraperError):
    """No session exists for the given id."""


class BatchSizeError(ScraperError, ValueError):
    """Batch size bounds are misconfigured."""
