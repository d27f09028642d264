"""Best-effort detection of anti-bot challenges on a loaded page."""

from enum import Enum

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field
from pyppeteer.page import Page

from app.telemetry.logger import get_logger

CAPTCHA_KEYWORDS = (
    "recaptcha",
    "captcha",
    "g-recaptcha",
    "grecaptcha",
    "hcaptcha",
    "h-captcha",
    "verify you are human",
    "verify you're human",
    "unusual traffic",
    "automated requests",
)

CAPTCHA_SELECTORS = (
    'iframe[src*="recaptcha"]',
    'iframe[src*="captcha"]',
    'div[class*="captcha"]',
    'div[id*="captcha"]',
    ".g-recaptcha",
    "#g-recaptcha",
)


class CaptchaAction(str, Enum):
    PAUSE_AND_ALERT = "pause_and_alert"
    REDUCE_BATCH_SIZE = "reduce_batch_size"
    INCREASE_DELAY = "increase_delay"
    STOP = "stop"


class CaptchaDetection(BaseModel):
    detected: bool = False
    indicators: list[str] = Field(default_factory=list)
    action: CaptchaAction | None = None


class CaptchaDetector:
    """Keyword and selector scan for challenge pages.

    The heuristic is not exhaustive and can produce false positives; errors
    while reading the page are treated as "no challenge".
    """

    def __init__(self, failed_lookup_threshold: float = 0.5, stop_after_challenges: int = 3):
        self.failed_lookup_threshold = failed_lookup_threshold
        self.stop_after_challenges = stop_after_challenges
        self.challenges_seen = 0
        self.logger = get_logger(__name__)

    def inspect_html(self, html: str) -> CaptchaDetection:
        lowered = html.lower()
        indicators = [f"keyword:{kw}" for kw in CAPTCHA_KEYWORDS if kw in lowered]

        soup = BeautifulSoup(html, "html.parser")
        indicators.extend(
            f"selector:{selector}" for selector in CAPTCHA_SELECTORS if soup.select_one(selector)
        )

        if not indicators:
            return CaptchaDetection()
        return CaptchaDetection(
            detected=True, indicators=indicators, action=CaptchaAction.PAUSE_AND_ALERT
        )

    async def detect(self, page: Page) -> CaptchaDetection:
        try:
            html = await page.content()
        except Exception as e:
            self.logger.warning(
                f"Could not read page for challenge check: {e}",
                extra={"operation": "captcha_check"},
            )
            return CaptchaDetection()

        result = self.inspect_html(html)
        if result.detected:
            self.logger.warning(
                "Anti-bot challenge detected",
                extra={"operation": "captcha_detected", "indicators": result.indicators},
            )
        return result

    def check_failed_lookup_rate(self, failed: int, total: int) -> CaptchaDetection:
        """Treat a high failure rate as a likely silent block."""
        if total <= 0:
            return CaptchaDetection()
        rate = failed / total
        if rate <= self.failed_lookup_threshold:
            return CaptchaDetection()
        return CaptchaDetection(
            detected=True,
            indicators=[f"failed_lookup_rate:{rate:.2f}"],
            action=CaptchaAction.REDUCE_BATCH_SIZE,
        )

    def recommend_action(self, result: CaptchaDetection) -> CaptchaAction | None:
        """Pick the response to a detection.

        Rate limiting slows down, a high failure rate shrinks batches and a
        challenge page pauses lookups. After ``stop_after_challenges``
        challenge pages the recommendation becomes STOP.
        """
        if not result.detected:
            return None
        action = result.action
        if action is None:
            if any(i.startswith("http_status:429") for i in result.indicators):
                action = CaptchaAction.INCREASE_DELAY
            elif any(i.startswith("failed_lookup_rate:") for i in result.indicators):
                action = CaptchaAction.REDUCE_BATCH_SIZE
            else:
                action = CaptchaAction.PAUSE_AND_ALERT

        if action == CaptchaAction.PAUSE_AND_ALERT:
            self.challenges_seen += 1
            if self.challenges_seen >= self.stop_after_challenges:
                return CaptchaAction.STOP
        return action

    @staticmethod
    def check_status_code(status: int | None) -> CaptchaDetection:
        if status == 429:
            return CaptchaDetection(
                detected=True, indicators=["http_status:429"], action=CaptchaAction.INCREASE_DELAY
            )
        return CaptchaDetection()
