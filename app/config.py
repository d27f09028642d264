"""Runtime settings for the scraper, read from environment variables."""

import os
from functools import lru_cache

from pydantic import BaseModel, Field

SERVERLESS_ENV_VARS = ("AWS_LAMBDA_FUNCTION_NAME", "VERCEL", "NETLIFY", "SERVERLESS")
SERVERLESS_CHROMIUM_PATH = "/opt/chromium"

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]


def _get_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def is_serverless() -> bool:
    """Return True when running inside a serverless platform."""
    return any(os.getenv(name) for name in SERVERLESS_ENV_VARS)


class ConcurrencyDefaults(BaseModel):
    """Recommended concurrency for the current environment."""

    simultaneous_towns: int
    simultaneous_industries: int
    simultaneous_lookups: int


class ScraperSettings(BaseModel):
    """Process-wide scraper settings.

    Durations are in seconds unless the field name says otherwise.
    """

    redis_url: str = "redis://localhost:6379/0"

    # Browser
    headless: bool = True
    executable_path: str | None = None
    serverless: bool = False
    use_stealth: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    viewport_width: int = 1920
    viewport_height: int = 1080

    # Timeouts
    navigation_timeout_ms: int = 60000
    element_timeout_ms: int = 5000
    lookup_navigation_timeout_ms: int = 15000

    # Pacing
    post_launch_delay: float = 2.0
    page_settle_delay: float = 2.0
    industry_batch_delay: float = 1.0
    navigation_retry_delay: float = 3.0
    navigation_extra_attempts: int = 2
    scroll_settle_delay: float = 1.0
    scroll_stall_limit: int = 3
    max_scroll_steps: int = 60
    lookup_delay: float = 0.5
    inter_batch_delay_min: float = 2.0
    inter_batch_delay_max: float = 5.0

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_queue_base_delay: float = 1.0
    retry_queue_max_attempts: int = 3
    retry_sweep_interval: float = 30.0

    # Provider lookups
    provider_cache_ttl_days: int = 30
    lookup_batch_min: int = 3
    lookup_batch_max: int = 5
    captcha_detection_enabled: bool = False

    # Sessions
    completed_session_ttl: float = 5 * 60
    stale_session_ttl: float = 24 * 60 * 60
    session_sweep_interval: float = 60.0
    stop_grace_period: float = 10.0

    defaults: ConcurrencyDefaults = Field(
        default_factory=lambda: ConcurrencyDefaults(
            simultaneous_towns=3, simultaneous_industries=2, simultaneous_lookups=2
        )
    )

    def launch_options(self) -> dict:
        """Options passed to pyppeteer.launch."""
        options = {
            "headless": self.headless,
            "args": list(BROWSER_ARGS),
            "handleSIGINT": False,
            "handleSIGTERM": False,
            "handleSIGHUP": False,
        }
        if self.executable_path:
            options["executablePath"] = self.executable_path
        return options


def load_settings() -> ScraperSettings:
    """Build settings from the environment."""
    serverless = is_serverless()
    executable_path = os.getenv("CHROMIUM_PATH") or (
        SERVERLESS_CHROMIUM_PATH if serverless else None
    )
    if serverless:
        defaults = ConcurrencyDefaults(
            simultaneous_towns=1, simultaneous_industries=1, simultaneous_lookups=1
        )
    else:
        defaults = ConcurrencyDefaults(
            simultaneous_towns=3, simultaneous_industries=2, simultaneous_lookups=2
        )

    return ScraperSettings(
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        headless=_get_bool_env("SCRAPER_HEADLESS", True),
        executable_path=executable_path,
        serverless=serverless,
        navigation_timeout_ms=int(os.getenv("SCRAPER_NAVIGATION_TIMEOUT_MS", "60000")),
        lookup_navigation_timeout_ms=int(os.getenv("SCRAPER_LOOKUP_TIMEOUT_MS", "15000")),
        retry_sweep_interval=_get_float_env("SCRAPER_RETRY_SWEEP_SECONDS", 30.0),
        provider_cache_ttl_days=int(os.getenv("PROVIDER_CACHE_TTL_DAYS", "30")),
        captcha_detection_enabled=_get_bool_env("SCRAPER_CAPTCHA_DETECTION", False),
        defaults=defaults,
    )


@lru_cache(maxsize=1)
def get_settings() -> ScraperSettings:
    """Cached settings for the running process."""
    return load_settings()
