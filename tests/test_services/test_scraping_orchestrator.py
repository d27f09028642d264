"""Tests for ScrapingOrchestrator coordination, pause/resume and stop."""

import asyncio
import urllib.parse
from collections import Counter
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.errors import ScraperError
from app.events import EventType
from app.models.scraping import ScrapeConfig, ScrapedBusiness, ScrapeState, SessionStatus
from app.services.provider_lookup_service import ProviderLookupService
from app.services.scraping_orchestrator import ScrapingOrchestrator, apply_providers


def events_of(orchestrator, event_type):
    return [e for e in orchestrator.events.history if e.type == event_type]


async def wait_for(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestScraping:
    """End-to-end runs with fake workers."""

    @pytest.mark.asyncio
    async def test_two_town_scenario(self, settings, worker_pool_cls):
        pool = worker_pool_cls()
        orchestrator = ScrapingOrchestrator(
            ["Cape Town", "Durban"],
            ["Pharmacy"],
            ScrapeConfig(simultaneous_towns=2, simultaneous_industries=1, simultaneous_lookups=1),
            settings=settings,
            worker_factory=pool,
        )
        subscription = orchestrator.events.subscribe()

        summary = await orchestrator.start()
        received = [event async for event in subscription]

        assert sorted(pool.processed) == ["Cape Town", "Durban"]
        assert len(pool.workers) == 2
        complete = [e for e in received if e.type == EventType.COMPLETE]
        assert len(complete) == 1
        assert len(complete[0].data["businesses"]) == 2
        assert complete[0].data["summary"]["total_businesses"] == 2
        progress = [e.data["percentage"] for e in received if e.type == EventType.PROGRESS]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert summary.towns_completed == 2
        assert summary.errors == 0
        assert orchestrator.status == SessionStatus.COMPLETED
        assert orchestrator.events.closed

    @pytest.mark.asyncio
    async def test_every_town_industry_pair_exactly_once(self, settings, worker_pool_cls):
        towns = ["Paarl", "George", "Knysna", "Durban"]
        industries = ["Pharmacy", "Bakery", "Dentist"]
        orchestrator = ScrapingOrchestrator(
            towns,
            industries,
            ScrapeConfig(simultaneous_towns=3),
            settings=settings,
            worker_factory=worker_pool_cls(),
        )

        await orchestrator.start()

        pairs = Counter((b.town, b.industry) for b in orchestrator.get_results())
        assert len(pairs) == 12
        assert set(pairs.values()) == {1}
        assert set(pairs) == {(t, i) for t in towns for i in industries}

    @pytest.mark.asyncio
    async def test_failed_town_does_not_abort_session(self, settings, worker_pool_cls):
        towns = ["Paarl", "George", "Knysna", "Durban", "Upington"]
        pool = worker_pool_cls(fail_towns={"Knysna"})
        orchestrator = ScrapingOrchestrator(
            towns, ["Pharmacy"], ScrapeConfig(simultaneous_towns=2),
            settings=settings, worker_factory=pool,
        )

        summary = await orchestrator.start()

        assert {b.town for b in orchestrator.get_results()} == set(towns) - {"Knysna"}
        assert summary.errors == 1
        assert summary.towns_completed == 4
        assert orchestrator.status == SessionStatus.COMPLETED
        assert orchestrator.get_progress().percentage == 100
        assert [f.town for f in orchestrator.get_failed_towns()] == ["Knysna"]
        errors = events_of(orchestrator, EventType.ERROR)
        assert len(errors) == 1
        assert errors[0].data["fatal"] is False

    @pytest.mark.asyncio
    async def test_no_browser_launches_is_fatal(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George"], ["Pharmacy"],
            settings=settings, worker_factory=worker_pool_cls(launch_error=True),
        )

        summary = await orchestrator.start()

        assert orchestrator.status == SessionStatus.ERROR
        assert summary.errors == 2
        assert any(e.data.get("fatal") for e in events_of(orchestrator, EventType.ERROR))
        assert events_of(orchestrator, EventType.COMPLETE) == []

    @pytest.mark.asyncio
    async def test_businesses_published_per_town(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy", "Bakery"], settings=settings, worker_factory=worker_pool_cls()
        )

        await orchestrator.start()

        kinds = [e.type for e in orchestrator.events.history if e.type != EventType.LOG]
        assert kinds[:4] == [
            EventType.BUSINESS, EventType.BUSINESS, EventType.TOWN_COMPLETE, EventType.PROGRESS,
        ]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy"], settings=settings, worker_factory=worker_pool_cls()
        )
        await orchestrator.start()
        with pytest.raises(ScraperError):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_no_towns_completes_immediately(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator([], ["Pharmacy"], settings=settings, worker_factory=worker_pool_cls())
        summary = await orchestrator.start()
        assert summary.total_businesses == 0
        assert orchestrator.status == SessionStatus.COMPLETED
        assert orchestrator.get_progress().percentage == 100


class TestPauseResume:
    """Cooperative pause and checkpoint round trips."""

    @pytest.mark.asyncio
    async def test_checkpoint_round_trip_matches_uncut_run(self, settings, worker_pool_cls):
        towns = ["T1", "T2", "T3", "T4"]
        industries = ["Pharmacy", "Bakery"]
        config = ScrapeConfig(simultaneous_towns=1)

        pool = worker_pool_cls()
        orchestrator = ScrapingOrchestrator(
            towns, industries, config, settings=settings, worker_factory=pool
        )

        async def pause_after_second_town(town):
            if town == "T2":
                orchestrator.pause()

        pool.on_town = pause_after_second_town
        task = asyncio.create_task(orchestrator.start())
        await wait_for(lambda: orchestrator.get_progress().completed_towns == 2)

        assert orchestrator.status == SessionStatus.PAUSED
        state = ScrapeState.model_validate_json(orchestrator.checkpoint().model_dump_json())
        assert state.completed_towns == ["T1", "T2"]
        assert state.current_town_index == 2
        assert len(state.results) == 4

        await orchestrator.stop()
        await task

        resumed_pool = worker_pool_cls()
        resumed = ScrapingOrchestrator(
            towns, industries, config, settings=settings,
            worker_factory=resumed_pool, checkpoint=state,
        )
        await resumed.start()

        assert resumed_pool.processed == ["T3", "T4"]
        names = [b.name for b in resumed.get_results()]
        assert len(names) == len(towns) * len(industries)
        assert set(names) == {f"{i} of {t}" for t in towns for i in industries}
        assert resumed.get_progress().percentage == 100

    @pytest.mark.asyncio
    async def test_in_process_resume_finishes(self, settings, worker_pool_cls):
        pool = worker_pool_cls()
        orchestrator = ScrapingOrchestrator(
            ["T1", "T2", "T3"], ["Pharmacy"], ScrapeConfig(simultaneous_towns=1),
            settings=settings, worker_factory=pool,
        )

        async def pause_on_first(town):
            if town == "T1":
                orchestrator.pause()

        pool.on_town = pause_on_first
        task = asyncio.create_task(orchestrator.start())
        await wait_for(lambda: orchestrator.get_progress().completed_towns == 1)
        await asyncio.sleep(0.05)
        assert pool.processed == ["T1"]

        orchestrator.resume()
        summary = await asyncio.wait_for(task, timeout=2)

        assert summary.total_businesses == 3
        assert orchestrator.status == SessionStatus.COMPLETED


class TestStop:
    """Forceful stop with real workers on fake browsers."""

    @pytest.mark.asyncio
    async def test_stop_closes_all_pages_mid_navigation(self, settings, browser_factory_cls):
        factory = browser_factory_cls(block=True)
        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George", "Knysna"],
            ["Pharmacy"],
            ScrapeConfig(simultaneous_towns=2, simultaneous_industries=1),
            settings=settings,
            browser_factory=factory,
        )

        task = asyncio.create_task(orchestrator.start())
        await wait_for(lambda: len(factory.pages) == 2 and all(p.goto_calls for p in factory.pages))

        await asyncio.wait_for(orchestrator.stop(), timeout=2)
        business_events_at_stop = len(events_of(orchestrator, EventType.BUSINESS))
        await asyncio.wait_for(task, timeout=2)

        assert all(page.closed for page in factory.pages)
        assert all(browser.closed for browser in factory.browsers)
        assert orchestrator.status == SessionStatus.STOPPED
        assert len(events_of(orchestrator, EventType.BUSINESS)) == business_events_at_stop == 0
        assert events_of(orchestrator, EventType.STOPPED)
        assert events_of(orchestrator, EventType.ERROR) == []

    @pytest.mark.asyncio
    async def test_stop_is_terminal(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy"], settings=settings, worker_factory=worker_pool_cls()
        )
        await orchestrator.stop()
        orchestrator.resume()
        assert orchestrator.status == SessionStatus.STOPPED
        with pytest.raises(ScraperError):
            await orchestrator.start()


class TestProviders:
    """Provider lookups after scraping."""

    @pytest.mark.asyncio
    async def test_providers_applied_to_results(self, settings, worker_pool_cls, browser_factory_cls):
        def vodacom(url):
            number = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["msisdn"][0]
            return f'<span class="p1">{number} is serviced by Vodacom</span>'

        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George"],
            ["Pharmacy"],
            settings=settings,
            worker_factory=worker_pool_cls(),
            provider_service=ProviderLookupService(
                settings, browser_factory=browser_factory_cls(vodacom)
            ),
        )

        await orchestrator.start()

        assert {b.provider for b in orchestrator.get_results()} == {"Vodacom"}
        updated = events_of(orchestrator, EventType.PROVIDERS_UPDATED)
        assert updated[0].data["updated"] == 2
        assert orchestrator.metrics.metrics["provider_lookup_duration"] >= 0

    @pytest.mark.asyncio
    async def test_lookup_failure_is_not_fatal(self, settings, worker_pool_cls):
        provider_service = MagicMock()
        provider_service.lookup_providers = AsyncMock(side_effect=RuntimeError("lookup site down"))
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy"], settings=settings,
            worker_factory=worker_pool_cls(), provider_service=provider_service,
        )

        await orchestrator.start()

        assert orchestrator.status == SessionStatus.COMPLETED
        logs = [e.data for e in events_of(orchestrator, EventType.LOG)]
        assert any(log["level"] == "error" and "lookup site down" in log["message"] for log in logs)

    @pytest.mark.asyncio
    async def test_lookup_skipped_when_disabled(self, settings, worker_pool_cls):
        provider_service = MagicMock()
        provider_service.lookup_providers = AsyncMock(return_value={})
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy"], ScrapeConfig(enable_provider_lookup=False),
            settings=settings, worker_factory=worker_pool_cls(), provider_service=provider_service,
        )

        await orchestrator.start()
        provider_service.lookup_providers.assert_not_called()

    def test_apply_providers_matches_exact_then_digits(self):
        businesses = [
            ScrapedBusiness(name="A", phone="082 123 4567", town="Paarl"),
            ScrapedBusiness(name="B", phone="+27 73 123 4567", town="Paarl"),
            ScrapedBusiness(name="C", phone="", town="Paarl"),
        ]
        updated = apply_providers(businesses, {"082 123 4567": "Vodacom", "0731234567": "MTN"})

        assert updated == 2
        assert [b.provider for b in businesses] == ["Vodacom", "MTN", ""]


class TestRetryFailedTowns:
    """Re-running failed towns inside the same session."""

    @pytest.mark.asyncio
    async def test_recovered_towns_replace_failures(self, settings, worker_pool_cls):
        pool = worker_pool_cls(fail_towns={"George"})
        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George", "Knysna"], ["Pharmacy", "Bakery"],
            settings=settings, worker_factory=pool,
        )
        await orchestrator.start()
        assert orchestrator.get_summary().errors == 1

        pool.fail_towns.clear()
        recovered = await orchestrator.retry_failed_towns()

        assert sorted(b.name for b in recovered) == ["Bakery of George", "Pharmacy of George"]
        summary = orchestrator.get_summary()
        assert summary.errors == 0
        assert summary.towns_completed == 3
        assert summary.total_businesses == 6
        assert orchestrator.get_failed_towns() == []
        assert orchestrator.get_progress().percentage == 100
        assert orchestrator.status == SessionStatus.COMPLETED
        assert pool.processed.count("George") == 1

    @pytest.mark.asyncio
    async def test_town_failing_again_keeps_one_entry(self, settings, worker_pool_cls):
        pool = worker_pool_cls(fail_towns={"George"})
        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George"], ["Pharmacy"], settings=settings, worker_factory=pool
        )
        await orchestrator.start()

        assert await orchestrator.retry_failed_towns() == []
        assert [f.town for f in orchestrator.get_failed_towns()] == ["George"]
        assert orchestrator.get_summary().errors == 1

    @pytest.mark.asyncio
    async def test_only_after_session_finished(self, settings, worker_pool_cls):
        orchestrator = ScrapingOrchestrator(
            ["Paarl"], ["Pharmacy"], settings=settings, worker_factory=worker_pool_cls()
        )
        with pytest.raises(ScraperError):
            await orchestrator.retry_failed_towns()

        await orchestrator.start()
        assert await orchestrator.retry_failed_towns() == []

    @pytest.mark.asyncio
    async def test_error_session_can_retry_after_launch_failures(self, settings, worker_pool_cls):
        pool = worker_pool_cls(launch_error=True)
        orchestrator = ScrapingOrchestrator(
            ["Paarl", "George"], ["Pharmacy"], settings=settings, worker_factory=pool
        )
        await orchestrator.start()
        assert orchestrator.status == SessionStatus.ERROR

        pool.launch_error = False
        recovered = await orchestrator.retry_failed_towns()

        assert len(recovered) == 2
        assert orchestrator.get_summary().errors == 0
