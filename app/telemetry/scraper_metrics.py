"""Telemetry and metrics for scraping sessions."""

import time
from contextlib import contextmanager
from typing import Any

from app.telemetry.logger import get_logger

_MAX_DURATIONS = 1000


class ScraperMetrics:
    """Metrics collection for one scrape session."""

    def __init__(self, session_id: str | None = None):
        """Initialize metrics collector.

        Args:
            session_id: Session the counters belong to, used as log context
        """
        self.session_id = session_id
        self.logger = get_logger(__name__)
        self.metrics: dict[str, Any] = {
            "towns_completed": 0,
            "towns_failed": 0,
            "businesses_scraped": 0,
            "navigation_retries": 0,
            "browsers_launched": 0,
            "lookups_performed": 0,
            "lookup_failures": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "captcha_detections": 0,
            "retry_queue_enqueued": 0,
            "provider_lookup_duration": 0.0,
            "town_durations": [],
            "error_types": {},
        }

    def increment(self, name: str, amount: int = 1) -> None:
        self.metrics[name] += amount

    def record_town_success(self, town: str, business_count: int, duration: float):
        """Record a finished town.

        Args:
            town: Town name
            business_count: Businesses extracted for the town
            duration: Time taken in seconds
        """
        self.metrics["towns_completed"] += 1
        self.metrics["businesses_scraped"] += business_count
        self._record_duration(duration)

        self.logger.info(
            f"Town completed: {business_count} businesses in {duration:.2f}s",
            extra={
                "operation": "town_complete",
                "session_id": self.session_id,
                "town": town,
                "business_count": business_count,
                "duration": duration,
            },
        )

    def record_town_failure(self, town: str, error: str, duration: float, error_type: str):
        """Record a town that produced no results because of an error.

        Args:
            town: Town name
            error: Error message
            duration: Time spent before failing
            error_type: Exception class name
        """
        self.metrics["towns_failed"] += 1
        self.metrics["error_types"][error_type] = (
            self.metrics["error_types"].get(error_type, 0) + 1
        )
        self._record_duration(duration)

        self.logger.error(
            f"Town failed: {error}",
            extra={
                "operation": "town_failed",
                "session_id": self.session_id,
                "town": town,
                "error_type": error_type,
            },
        )

    def record_cache(self, hits: int, misses: int) -> None:
        self.metrics["cache_hits"] += hits
        self.metrics["cache_misses"] += misses

    def _record_duration(self, duration: float) -> None:
        durations = self.metrics["town_durations"]
        durations.append(duration)
        if len(durations) > _MAX_DURATIONS:
            self.metrics["town_durations"] = durations[-_MAX_DURATIONS:]

    def average_town_duration(self) -> float:
        durations = self.metrics["town_durations"]
        return sum(durations) / len(durations) if durations else 0.0

    def get_metrics_summary(self) -> dict[str, Any]:
        """Get current metrics summary.

        Returns:
            Dictionary of metrics
        """
        lookups = self.metrics["cache_hits"] + self.metrics["cache_misses"]
        cache_hit_rate = self.metrics["cache_hits"] / lookups if lookups else 0

        summary = {
            key: value
            for key, value in self.metrics.items()
            if key not in ("town_durations", "error_types")
        }
        summary["average_town_duration"] = self.average_town_duration()
        summary["cache_hit_rate"] = cache_hit_rate
        summary["error_types"] = dict(self.metrics["error_types"])
        return summary

    @contextmanager
    def track_operation(self, operation_name: str, **kwargs):
        """Context manager to track operation timing.

        Args:
            operation_name: Name of operation
            **kwargs: Additional context

        Yields:
            Log context; ``duration`` is added once the block finishes
        """
        start_time = time.time()
        context = {"session_id": self.session_id, **kwargs}

        self.logger.debug(
            f"Starting {operation_name}",
            extra={"operation": f"{operation_name}_start", **context},
        )

        try:
            yield context
        except Exception as e:
            duration = time.time() - start_time
            context["duration"] = duration
            self.logger.error(
                f"Error in {operation_name} after {duration:.3f}s: {e}",
                extra={"operation": f"{operation_name}_error", "duration": duration, **context},
            )
            raise

        duration = time.time() - start_time
        context["duration"] = duration
        self.logger.debug(
            f"Completed {operation_name} in {duration:.3f}s",
            extra={"operation": f"{operation_name}_complete", "duration": duration, **context},
        )
