"""Coordinates a pool of browser workers over towns x industries."""

import asyncio
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable
from typing import Any, Protocol

from app.config import ScraperSettings, get_settings
from app.errors import BrowserLaunchError, ScraperError
from app.events import EventChannel, EventType
from app.models.scraping import (
    FailedTown,
    ScrapeConfig,
    ScrapedBusiness,
    ScrapeProgress,
    ScrapeState,
    ScrapeSummary,
    SessionStatus,
    validate_transition,
)
from app.scrapers.browser import BrowserFactory
from app.scrapers.browser_worker import BrowserWorker
from app.scrapers.control import ScrapeControl
from app.scrapers.maps_parser import clean_phone
from app.services.provider_lookup_service import ProviderLookupService
from app.telemetry.logger import get_logger
from app.telemetry.scraper_metrics import ScraperMetrics


class TownWorker(Protocol):
    async def process_town(self, town: str, industries: list[str]) -> list[ScrapedBusiness]: ...

    async def force_stop(self) -> None: ...


WorkerFactory = Callable[[int, ScrapeControl], TownWorker]

_LOG_LEVELS = {"info": "info", "success": "info", "warn": "warning", "error": "error"}


def apply_providers(businesses: list[ScrapedBusiness], providers: dict[str, str]) -> int:
    """Copy resolved carriers onto businesses; exact phone match first, then digits.

    Returns:
        Number of businesses that received a provider
    """
    by_digits = {clean_phone(phone): provider for phone, provider in providers.items()}
    updated = 0
    for business in businesses:
        if not business.phone:
            continue
        provider = providers.get(business.phone) or by_digits.get(clean_phone(business.phone))
        if provider:
            business.provider = provider
            updated += 1
    return updated


class ScrapingOrchestrator:
    """Runs one scrape session.

    Towns are pulled from a shared queue by ``simultaneous_towns`` workers.
    A town's businesses are published only once the whole town is done. A
    failed town is counted and logged; the session carries on. Only when
    every attempted town failed because no browser could be launched does
    the session end in ``error``.
    """

    def __init__(
        self,
        towns: list[str],
        industries: list[str],
        config: ScrapeConfig | None = None,
        *,
        settings: ScraperSettings | None = None,
        session_id: str | None = None,
        worker_factory: WorkerFactory | None = None,
        browser_factory: BrowserFactory | None = None,
        provider_service: ProviderLookupService | None = None,
        events: EventChannel | None = None,
        metrics: ScraperMetrics | None = None,
        checkpoint: ScrapeState | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.towns = list(towns)
        self.industries = list(industries)
        self.config = config or ScrapeConfig()
        self.settings = settings or get_settings()
        self.control = ScrapeControl()
        self.events = events or EventChannel()
        self.metrics = metrics or ScraperMetrics(self.session_id)
        self.provider_service = provider_service
        self.status: SessionStatus | None = None
        self.workers: list[TownWorker] = []
        self.logger = get_logger(__name__)

        self._worker_factory = worker_factory or self._default_worker
        self._browser_factory = browser_factory
        self._clock = clock
        self._tasks: list[asyncio.Task] = []
        self._in_flight: set[int] = set()
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._run_successes = 0
        self._run_failures = 0
        self._launch_failures = 0
        self._retry_run: ScrapingOrchestrator | None = None

        state = checkpoint or ScrapeState()
        self._results: list[ScrapedBusiness] = [b.model_copy() for b in state.results]
        self._completed_towns: list[str] = list(state.completed_towns)
        self._failed_towns: list[FailedTown] = list(state.failed_towns)
        self._previous_elapsed = state.elapsed_seconds
        self._pending: deque[tuple[int, str]] = deque(self._remaining_towns())

    def _remaining_towns(self) -> list[tuple[int, str]]:
        done = Counter(self._completed_towns)
        done.update(failed.town for failed in self._failed_towns)
        remaining = []
        for index, town in enumerate(self.towns):
            if done[town] > 0:
                done[town] -= 1
                continue
            remaining.append((index, town))
        return remaining

    def _default_worker(self, worker_id: int, control: ScrapeControl) -> BrowserWorker:
        return BrowserWorker(
            worker_id,
            control,
            self.settings,
            browser_factory=self._browser_factory,
            simultaneous_industries=self.config.simultaneous_industries,
            metrics=self.metrics,
            session_id=self.session_id,
        )

    def _set_status(self, status: SessionStatus) -> None:
        validate_transition(self.status, status)
        self.status = status

    def _log(self, level: str, message: str, **extra: Any) -> None:
        getattr(self.logger, _LOG_LEVELS[level])(
            message, extra={"session_id": self.session_id, **extra}
        )
        self.events.publish(EventType.LOG, level=level, message=message)

    # Lifecycle

    async def start(self) -> ScrapeSummary:
        """Scrape every remaining town, then resolve providers.

        Returns once all towns are processed or the session is stopped.
        """
        if self.status is not None:
            raise ScraperError(f"Session {self.session_id} already {self.status.value}")

        self._set_status(SessionStatus.RUNNING)
        self._started_at = self._clock()
        pool_size = min(self.config.simultaneous_towns, len(self._pending))
        self._log(
            "info",
            f"Starting scrape: {len(self._pending)} towns, {len(self.industries)} industries, "
            f"{pool_size} workers",
            operation="scrape_start",
        )

        self.workers = [self._worker_factory(i, self.control) for i in range(pool_size)]
        self._tasks = [asyncio.create_task(self._run_worker(w)) for w in self.workers]
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.control.stopped:
            return self.get_summary()

        if self.config.enable_provider_lookup and self.provider_service is not None:
            await self._run_provider_lookups()
            if self.control.stopped:
                return self.get_summary()

        self._finished_at = self._clock()
        summary = self.get_summary()

        if self._run_successes == 0 and self._run_failures > 0 and (
            self._launch_failures == self._run_failures
        ):
            self._set_status(SessionStatus.ERROR)
            message = "No browser could be launched; scraping aborted"
            self._log("error", message, operation="scrape_fatal")
            self.events.publish(EventType.ERROR, message=message, fatal=True)
        else:
            self._set_status(SessionStatus.COMPLETED)
            self._log(
                "success",
                f"Scraping complete: {summary.total_businesses} businesses, "
                f"{summary.errors} failed towns",
                operation="scrape_complete",
            )
            self.events.publish(
                EventType.COMPLETE,
                businesses=[b.model_dump(mode="json") for b in self._results],
                summary=summary.model_dump(mode="json"),
                metrics=self.metrics.get_metrics_summary(),
            )

        self.events.close()
        return summary

    async def _run_worker(self, worker: TownWorker) -> None:
        while True:
            if not await self.control.wait_if_paused():
                return
            if not self._pending:
                return

            index, town = self._pending.popleft()
            self._in_flight.add(index)
            started = self._clock()
            try:
                businesses = await worker.process_town(town, self.industries)
            except Exception as e:
                if self.control.stopped:
                    return
                self._record_failure(town, e, self._clock() - started)
                continue
            finally:
                self._in_flight.discard(index)

            if self.control.stopped:
                return
            self._record_success(town, businesses, self._clock() - started)

    def _record_success(self, town: str, businesses: list[ScrapedBusiness], duration: float):
        self._results.extend(businesses)
        self._completed_towns.append(town)
        self._run_successes += 1
        self.metrics.record_town_success(town, len(businesses), duration)

        for business in businesses:
            self.events.publish(EventType.BUSINESS, business=business.model_dump(mode="json"))
        self.events.publish(EventType.TOWN_COMPLETE, town=town, business_count=len(businesses))
        self._publish_progress()
        self._log("success", f"Completed {town}: {len(businesses)} businesses", town=town)

    def _record_failure(self, town: str, error: Exception, duration: float):
        self._failed_towns.append(FailedTown(town=town, error=str(error)))
        self._run_failures += 1
        if isinstance(error, BrowserLaunchError):
            self._launch_failures += 1
        self.metrics.record_town_failure(town, str(error), duration, type(error).__name__)

        self.events.publish(EventType.ERROR, town=town, message=str(error), fatal=False)
        self._publish_progress()
        self._log("error", f"Failed to scrape {town}: {error}", town=town)

    def _publish_progress(self) -> None:
        self.events.publish(EventType.PROGRESS, **self.get_progress().model_dump())

    async def _run_provider_lookups(self) -> None:
        phones = [b.phone for b in self._results if b.phone]
        if not phones:
            return

        self._log("info", f"Looking up providers for {len(set(phones))} numbers")
        try:
            with self.metrics.track_operation("provider_lookup", numbers=len(phones)) as tracked:
                providers = await self.provider_service.lookup_providers(phones)
        except Exception as e:
            self._log("error", f"Provider lookup failed: {e}", operation="provider_lookup")
            return
        self.metrics.metrics["provider_lookup_duration"] = tracked["duration"]
        if self.control.stopped:
            return

        updated = apply_providers(self._results, providers)
        self.events.publish(
            EventType.PROVIDERS_UPDATED,
            updated=updated,
            businesses=[b.model_dump(mode="json") for b in self._results],
        )
        self._log("success", f"Providers resolved for {updated} businesses")

    def pause(self) -> None:
        """Ask workers to hold after their current work unit."""
        if self.status != SessionStatus.RUNNING:
            return
        self.control.pause()
        self._set_status(SessionStatus.PAUSED)
        self._log("info", "Scraping paused", operation="scrape_pause")

    def resume(self) -> None:
        if self.status != SessionStatus.PAUSED:
            return
        self._set_status(SessionStatus.RUNNING)
        self.control.resume()
        self._log("info", "Scraping resumed", operation="scrape_resume")

    async def stop(self) -> None:
        """Close every worker's pages and browser, then wait for workers to exit."""
        if self._retry_run is not None:
            await self._retry_run.stop()
        if self.status is not None and self.status.is_terminal:
            return

        self.control.stop()
        if self.provider_service is not None:
            self.provider_service.cancel()
        await asyncio.gather(*(w.force_stop() for w in self.workers), return_exceptions=True)

        running = [task for task in self._tasks if not task.done()]
        if running:
            _, still_running = await asyncio.wait(running, timeout=self.settings.stop_grace_period)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

        self._finished_at = self._clock()
        self._set_status(SessionStatus.STOPPED)
        self._log("warn", "Scraping stopped", operation="scrape_stop")
        self.events.publish(EventType.STOPPED, summary=self.get_summary().model_dump(mode="json"))
        self.events.close()

    # Queries

    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return self._previous_elapsed
        end = self._finished_at if self._finished_at is not None else self._clock()
        return self._previous_elapsed + end - self._started_at

    def get_progress(self) -> ScrapeProgress:
        done = len(self._completed_towns) + len(self._failed_towns)
        total = len(self.towns)
        remaining = max(total - done, 0)
        percentage = 100 if total == 0 else min(100, round(done * 100 / total))
        estimate = (
            self.metrics.average_town_duration()
            * remaining
            / max(1, self.config.simultaneous_towns)
        )
        return ScrapeProgress(
            completed_towns=done,
            total_towns=total,
            percentage=percentage,
            towns_remaining=remaining,
            businesses_scraped=len(self._results),
            estimated_time_remaining=estimate,
        )

    def get_results(self) -> list[ScrapedBusiness]:
        return list(self._results)

    def get_failed_towns(self) -> list[FailedTown]:
        return list(self._failed_towns)

    async def retry_failed_towns(self) -> list[ScrapedBusiness]:
        """Re-run only the towns that failed, after the session has finished.

        Towns that succeed this time move from the failed list to the
        completed list and their businesses join the results. Towns that fail
        again keep one failure entry with the latest error. The session status
        is not changed.

        Returns:
            Businesses recovered by the retry
        """
        if self.status not in (SessionStatus.COMPLETED, SessionStatus.ERROR):
            state = self.status.value if self.status else "not started"
            raise ScraperError(f"Cannot retry failed towns while session is {state}")
        if self._retry_run is not None:
            raise ScraperError(f"Session {self.session_id} is already retrying failed towns")
        failed = [entry.town for entry in self._failed_towns]
        if not failed:
            return []

        self._log("info", f"Retrying {len(failed)} failed towns", operation="retry_failed_towns")
        retry_run = ScrapingOrchestrator(
            failed,
            self.industries,
            self.config,
            settings=self.settings,
            session_id=self.session_id,
            worker_factory=self._worker_factory,
            provider_service=self.provider_service,
            metrics=self.metrics,
            clock=self._clock,
        )
        self._retry_run = retry_run
        try:
            await retry_run.start()
        finally:
            self._retry_run = None

        outcome = retry_run.checkpoint()
        recovered = Counter(outcome.completed_towns)
        latest_errors = {entry.town: entry for entry in outcome.failed_towns}
        still_failed = []
        for entry in self._failed_towns:
            if recovered[entry.town] > 0:
                recovered[entry.town] -= 1
                continue
            still_failed.append(latest_errors.get(entry.town, entry))

        self._failed_towns = still_failed
        self._completed_towns.extend(outcome.completed_towns)
        self._results.extend(outcome.results)
        self._log(
            "success",
            f"Retry complete: {len(outcome.results)} businesses from "
            f"{len(outcome.completed_towns)} recovered towns",
            operation="retry_failed_towns",
        )
        return list(outcome.results)

    def get_summary(self) -> ScrapeSummary:
        return ScrapeSummary(
            total_businesses=len(self._results),
            towns_completed=len(self._completed_towns),
            errors=len(self._failed_towns),
            total_duration=self.elapsed_seconds(),
            average_town_duration=self.metrics.average_town_duration(),
        )

    def checkpoint(self) -> ScrapeState:
        """Resume cursor: finished towns and their results, never a partial town."""
        unfinished = [index for index, _ in self._pending] + list(self._in_flight)
        return ScrapeState(
            current_town_index=min(unfinished) if unfinished else len(self.towns),
            completed_towns=list(self._completed_towns),
            failed_towns=list(self._failed_towns),
            results=[b.model_copy() for b in self._results],
            elapsed_seconds=self.elapsed_seconds(),
        )
