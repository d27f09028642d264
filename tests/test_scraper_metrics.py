import logging

import pytest

from app.telemetry.scraper_metrics import ScraperMetrics


def test_counters_and_summary():
    metrics = ScraperMetrics("s1")
    metrics.record_town_success("Paarl", 4, 2.0)
    metrics.record_town_failure("George", "timed out", 4.0, "TownScrapeError")
    metrics.record_cache(hits=3, misses=1)

    summary = metrics.get_metrics_summary()
    assert summary["towns_completed"] == 1
    assert summary["towns_failed"] == 1
    assert summary["businesses_scraped"] == 4
    assert summary["average_town_duration"] == 3.0
    assert summary["cache_hit_rate"] == 0.75
    assert summary["error_types"] == {"TownScrapeError": 1}


def test_track_operation_reports_duration():
    metrics = ScraperMetrics("s1")

    with metrics.track_operation("provider_lookup", numbers=3) as tracked:
        assert tracked["numbers"] == 3

    assert tracked["duration"] >= 0
    assert tracked["session_id"] == "s1"


def test_track_operation_logs_and_reraises_errors(caplog):
    metrics = ScraperMetrics("s1")

    with caplog.at_level(logging.ERROR, logger="app.telemetry.scraper_metrics"):
        with pytest.raises(RuntimeError, match="lookup site down"):
            with metrics.track_operation("provider_lookup") as tracked:
                raise RuntimeError("lookup site down")

    assert "duration" in tracked
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert errors[0].operation == "provider_lookup_error"
    assert "lookup site down" in errors[0].getMessage()
