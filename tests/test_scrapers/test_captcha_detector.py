"""Tests for CaptchaDetector heuristics."""

from unittest.mock import AsyncMock

import pytest

from app.scrapers.captcha_detector import CaptchaAction, CaptchaDetection, CaptchaDetector


@pytest.fixture
def detector():
    return CaptchaDetector()


class TestInspectHtml:
    """Keyword and selector scan."""

    def test_clean_page(self, detector):
        result = detector.inspect_html('<span class="p1">serviced by Vodacom</span>')
        assert not result.detected
        assert result.action is None

    def test_recaptcha_iframe(self, detector):
        html = '<iframe src="https://www.google.com/recaptcha/api2/anchor"></iframe>'
        result = detector.inspect_html(html)
        assert result.detected
        assert 'selector:iframe[src*="recaptcha"]' in result.indicators
        assert result.action == CaptchaAction.PAUSE_AND_ALERT

    def test_unusual_traffic_text(self, detector):
        html = "<p>Our systems have detected Unusual Traffic from your network.</p>"
        result = detector.inspect_html(html)
        assert result.detected
        assert "keyword:unusual traffic" in result.indicators


class TestSignals:
    """Non-content signals."""

    def test_failed_lookup_rate(self, detector):
        assert not detector.check_failed_lookup_rate(2, 5).detected
        result = detector.check_failed_lookup_rate(3, 5)
        assert result.detected
        assert result.action == CaptchaAction.REDUCE_BATCH_SIZE
        assert not detector.check_failed_lookup_rate(0, 0).detected

    def test_rate_limited_status(self, detector):
        assert detector.check_status_code(429).action == CaptchaAction.INCREASE_DELAY
        assert not detector.check_status_code(200).detected


class TestDetect:
    """Page inspection is best effort."""

    @pytest.mark.asyncio
    async def test_reads_page_content(self, detector):
        page = AsyncMock()
        page.content.return_value = '<div class="g-recaptcha"></div>'
        assert (await detector.detect(page)).detected

    @pytest.mark.asyncio
    async def test_unreadable_page_is_not_a_challenge(self, detector):
        page = AsyncMock()
        page.content.side_effect = RuntimeError("Target closed")
        assert not (await detector.detect(page)).detected


class TestRecommendAction:
    """Mapping detections to responses."""

    def test_nothing_detected(self, detector):
        assert detector.recommend_action(CaptchaDetection()) is None

    def test_uses_signal_specific_actions(self, detector):
        assert detector.recommend_action(detector.check_status_code(429)) == CaptchaAction.INCREASE_DELAY
        rate = detector.check_failed_lookup_rate(4, 5)
        assert detector.recommend_action(rate) == CaptchaAction.REDUCE_BATCH_SIZE

    def test_infers_action_from_indicators(self, detector):
        rate_limited = CaptchaDetection(detected=True, indicators=["http_status:429"])
        assert detector.recommend_action(rate_limited) == CaptchaAction.INCREASE_DELAY
        challenge = CaptchaDetection(detected=True, indicators=["keyword:captcha"])
        assert detector.recommend_action(challenge) == CaptchaAction.PAUSE_AND_ALERT

    def test_repeated_challenges_escalate_to_stop(self):
        detector = CaptchaDetector(stop_after_challenges=3)
        challenge = detector.inspect_html('<div class="g-recaptcha"></div>')

        actions = [detector.recommend_action(challenge) for _ in range(3)]

        assert actions == [
            CaptchaAction.PAUSE_AND_ALERT,
            CaptchaAction.PAUSE_AND_ALERT,
            CaptchaAction.STOP,
        ]
        assert detector.recommend_action(detector.check_status_code(429)) == CaptchaAction.INCREASE_DELAY
