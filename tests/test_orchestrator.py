"""
Scrape orchestrator tests against a fake browser session.

Every test drives the real orchestrator, extractors and database; only the
browser is replaced by fixture HTML.
"""

from unittest.mock import AsyncMock

import pytest

from api import database as db
from conftest import FakeSession, SessionFactory, detail_html, listing_html, place_url
from monitoring.events import EventBus, JobCompleted, JobFailed, JobPaused, JobProgress
from scraper.delays import DelayController
from scraper.enrichment import ENRICH_QUEUE
from scraper.errors import JobNotFound, SessionCrashed
from scraper.extractors import build_search_url
from scraper.models import JobStatus, PacingConfig
from scraper.orchestrator import CHALLENGE_PAUSE_REASON, ScrapeOrchestrator

PACING = PacingConfig(min_delay_ms=100, max_delay_ms=200, rest_every=50, rest_duration_ms=500)


def site(term, location, place_ids):
    """Listing page for (term, location) plus one detail page per place id."""
    links = [place_url(pid) for pid in place_ids]
    pages = {build_search_url(term, location): listing_html(links)}
    for pid, link in zip(place_ids, links):
        pages[link] = detail_html(f"Place {pid}")
    return pages, links


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


async def new_job(terms, locations=None, result_cap=10, pacing=PACING):
    return await db.create_job(
        "Acme Marketing",
        terms,
        locations=locations or [],
        result_cap=result_cap,
        pacing=pacing,
        fields=["phone"],
    )


def orchestrator(job_id, factory, notifier, delays=None, bus=None, **kwargs):
    return ScrapeOrchestrator(
        job_id,
        session_factory=factory,
        delays=delays or DelayController(sleep=AsyncMock()),
        notifier=notifier,
        event_bus=bus,
        **kwargs,
    )


@pytest.mark.asyncio
class TestCompletion:

    async def test_all_pairs_scraped(self, test_db, notifier):
        pages = {}
        for term in ("bakery", "cafe"):
            for location in ("Springfield", "Shelbyville"):
                site_pages, _ = site(term, location, [f"{term}-{location}-1", f"{term}-{location}-2"])
                pages.update(site_pages)
        job_id = await new_job(["bakery", "cafe"], ["Springfield", "Shelbyville"])
        bus = EventBus()
        subscription = bus.subscribe(job_id)
        factory = SessionFactory(pages=pages)

        status = await orchestrator(job_id, factory, notifier, bus=bus).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.COMPLETED
        assert job.status == JobStatus.COMPLETED
        assert job.records_scraped == 8
        assert job.failed_count == 0
        assert (job.current_term_index, job.current_location_index) == (2, 0)
        assert job.started_at is not None and job.completed_at is not None
        assert len(await db.list_places(job_id)) == 8
        assert factory.sessions[0].close_calls == 1

        events = drain(subscription)
        progress = [e for e in events if isinstance(e, JobProgress)]
        assert [e.records_scraped for e in progress] == list(range(1, 9))
        assert isinstance(events[-1], JobCompleted)
        assert events[-1].records_scraped == 8

        assert notifier.names()[0] == "job_started"
        assert notifier.names()[-1] == "job_completed"
        logs = [entry["event"] for entry in await db.list_system_logs(job_id)]
        assert "JOB_STARTED" in logs and "JOB_COMPLETED" in logs

    async def test_duplicate_natural_key_and_result_cap(self, test_db, notifier):
        # Five candidate links; the second is another URL for the first place.
        links = [
            place_url("p1", lat=39.70),
            place_url("p1", lat=39.71),
            place_url("p3"),
            place_url("p4"),
            place_url("p5"),
        ]
        pages = {build_search_url("bakery", "Springfield"): listing_html(links)}
        for link in links:
            pages[link] = detail_html("Bakery")
        job_id = await new_job(["bakery"], ["Springfield"], result_cap=3)
        factory = SessionFactory(pages=pages)

        await orchestrator(job_id, factory, notifier).run()

        job = await db.get_job(job_id)
        places = await db.list_places(job_id)
        assert job.status == JobStatus.COMPLETED
        assert sorted(p["place_id"] for p in places) == ["p1", "p3"]
        assert job.records_scraped == 2
        assert job.failed_count == 0
        assert await db.list_failed_scrapes(job_id) == []
        assert links[3] not in factory.sessions[0].visited

    async def test_no_locations_means_one_pass_per_term(self, test_db, notifier):
        pages, _ = site("bakery", None, ["a", "b"])
        job_id = await new_job(["bakery"])
        factory = SessionFactory(pages=pages)

        await orchestrator(job_id, factory, notifier).run()

        assert factory.sessions[0].visited[0] == build_search_url("bakery")
        assert (await db.get_job(job_id)).records_scraped == 2

    async def test_enrichment_queued_on_completion(self, test_db, notifier):
        pages, _ = site("bakery", None, ["a", "b"])
        job_id = await new_job(["bakery"])

        await orchestrator(job_id, SessionFactory(pages=pages), notifier).run()

        assert await db.get_queue_counts(ENRICH_QUEUE) == {"queued": 2}
        place = await db.get_place("a")
        assert place["enrichment_status"] == "PENDING"

    async def test_milestones_and_rest_windows(self, test_db, notifier):
        pages, _ = site("bakery", None, ["a", "b", "c", "d"])
        job_id = await new_job(
            ["bakery"], pacing=PacingConfig(min_delay_ms=100, max_delay_ms=200, rest_every=2, rest_duration_ms=500)
        )
        sleep = AsyncMock()

        await orchestrator(
            job_id, SessionFactory(pages=pages), notifier,
            delays=DelayController(sleep=sleep), milestone_every=2,
        ).run()

        assert notifier.names().count("milestone") == 2
        rests = [c for c in sleep.await_args_list if c.args[0] == 0.5]
        assert len(rests) == 2
        logs = [entry["event"] for entry in await db.list_system_logs(job_id)]
        assert logs.count("MILESTONE") == 2

    async def test_session_rotation_logged(self, test_db, notifier):
        pages, _ = site("bakery", None, ["a", "b", "c"])
        job_id = await new_job(["bakery"])
        factory = SessionFactory(pages=pages, rotate_every=2)

        await orchestrator(job_id, factory, notifier).run()

        assert factory.sessions[0].rotations == 1
        logs = [entry["event"] for entry in await db.list_system_logs(job_id)]
        assert "SESSION_ROTATED" in logs


@pytest.mark.asyncio
class TestRecoverableFailures:

    async def test_detail_failure_is_recorded_and_loop_continues(self, test_db, notifier):
        pages, links = site("bakery", None, ["a", "b", "c"])
        del pages[links[1]]
        job_id = await new_job(["bakery"])

        status = await orchestrator(job_id, SessionFactory(pages=pages), notifier).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.COMPLETED
        assert job.records_scraped == 2
        assert job.failed_count == 1
        failures = await db.list_failed_scrapes(job_id)
        assert len(failures) == 1
        assert failures[0]["url"] == links[1]
        assert failures[0]["error_type"] == "ExtractionError"
        assert failures[0]["search_term"] == "bakery"

    async def test_listing_failure_skips_only_that_pair(self, test_db, notifier):
        pages, _ = site("cafe", "Springfield", ["c1"])
        job_id = await new_job(["bakery", "cafe"], ["Springfield"])

        status = await orchestrator(job_id, SessionFactory(pages=pages), notifier).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.COMPLETED
        assert job.records_scraped == 1
        assert job.failed_count == 1


@pytest.mark.asyncio
class TestChallengePause:

    async def test_challenge_on_record_k_pauses_with_k_minus_one_saved(self, test_db, notifier):
        pages, links = site("bakery", "Springfield", ["p1", "p2", "p3", "p4", "p5"])
        job_id = await new_job(["bakery"], ["Springfield"])
        bus = EventBus()
        subscription = bus.subscribe()
        factory = SessionFactory(pages=pages, challenge_urls=[links[2]])

        status = await orchestrator(job_id, factory, notifier, bus=bus).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.PAUSED
        assert job.status == JobStatus.PAUSED
        assert job.pause_reason == CHALLENGE_PAUSE_REASON
        assert job.records_scraped == 2
        assert len(await db.list_places(job_id)) == 2
        assert links[3] not in factory.sessions[0].visited
        assert factory.sessions[0].close_calls == 1

        assert "challenge_detected" in notifier.names()
        logs = await db.list_system_logs(job_id)
        captcha = [entry for entry in logs if entry["event"] == "CAPTCHA_DETECTED"]
        assert captcha and captcha[0]["level"] == "CRITICAL"
        assert captcha[0]["metadata"]["url"] == links[2]

        events = drain(subscription)
        assert isinstance(events[-1], JobPaused)
        assert events[-1].reason == CHALLENGE_PAUSE_REASON

    async def test_challenge_on_listing_pauses_before_any_detail(self, test_db, notifier):
        pages, _ = site("bakery", None, ["p1"])
        job_id = await new_job(["bakery"])
        factory = SessionFactory(pages=pages, challenge_urls=[build_search_url("bakery")])

        status = await orchestrator(job_id, factory, notifier).run()

        assert status == JobStatus.PAUSED
        assert (await db.get_job(job_id)).records_scraped == 0

    async def test_paused_job_is_not_run(self, test_db, notifier):
        job_id = await new_job(["bakery"])
        await db.update_job(job_id, status=JobStatus.PAUSED)
        factory = SessionFactory(pages={})

        status = await orchestrator(job_id, factory, notifier).run()

        assert status == JobStatus.PAUSED
        assert factory.sessions == []


@pytest.mark.asyncio
class TestResumeCursor:

    async def test_resume_continues_at_the_paused_pair(self, test_db, notifier):
        bakery_pages, _ = site("bakery", None, ["b1", "b2"])
        cafe_pages, _ = site("cafe", None, ["c1", "c2"])
        pages = {**bakery_pages, **cafe_pages}
        job_id = await new_job(["bakery", "cafe"])

        first = SessionFactory(pages=pages, challenge_urls=[build_search_url("cafe")])
        assert await orchestrator(job_id, first, notifier).run() == JobStatus.PAUSED

        job = await db.get_job(job_id)
        assert (job.current_term_index, job.current_location_index) == (1, 0)
        assert job.records_scraped == 2

        assert await db.transition_job(job_id, JobStatus.PAUSED, JobStatus.PENDING, pause_reason=None)
        second = SessionFactory(pages=pages)
        assert await orchestrator(job_id, second, notifier).run() == JobStatus.COMPLETED

        visited = second.sessions[0].visited
        assert build_search_url("bakery") not in visited
        assert visited[0] == build_search_url("cafe")

        job = await db.get_job(job_id)
        assert job.records_scraped == 4
        assert len(await db.list_places(job_id)) == 4
        assert notifier.names().count("job_started") == 1

    async def test_resume_mid_pair_collapses_already_saved_records(self, test_db, notifier):
        pages, links = site("bakery", None, ["p1", "p2", "p3"])
        job_id = await new_job(["bakery"])

        first = SessionFactory(pages=pages, challenge_urls=[links[1]])
        await orchestrator(job_id, first, notifier).run()
        await db.transition_job(job_id, JobStatus.PAUSED, JobStatus.PENDING, pause_reason=None)
        await orchestrator(job_id, SessionFactory(pages=pages), notifier).run()

        job = await db.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.records_scraped == 3
        assert sorted(p["place_id"] for p in await db.list_places(job_id)) == ["p1", "p2", "p3"]


class PausingSession(FakeSession):
    """Simulates a user pausing the job while a given page is loading."""

    def __init__(self, job_id, pause_on, **kwargs):
        super().__init__(**kwargs)
        self.job_id = job_id
        self.pause_on = pause_on

    async def navigate_and_extract(self, url, extractor, check_challenge=True):
        if url == self.pause_on:
            await db.transition_job(self.job_id, JobStatus.RUNNING, JobStatus.PAUSED, pause_reason="Manually paused by user")
        return await super().navigate_and_extract(url, extractor, check_challenge)


@pytest.mark.asyncio
class TestExternalPause:

    async def test_pause_observed_at_next_pair_boundary(self, test_db, notifier):
        pages, links = site("bakery", "Springfield", ["p1", "p2"])
        more, _ = site("bakery", "Shelbyville", ["p3"])
        pages.update(more)
        job_id = await new_job(["bakery"], ["Springfield", "Shelbyville"])
        bus = EventBus()
        subscription = bus.subscribe(job_id)
        sessions = []

        def factory():
            session = PausingSession(job_id, links[0], pages=pages)
            sessions.append(session)
            return session

        status = await orchestrator(job_id, factory, notifier, bus=bus).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.PAUSED
        assert job.status == JobStatus.PAUSED
        # The in-flight pair finishes; the next one is not started.
        assert job.records_scraped == 2
        assert (job.current_term_index, job.current_location_index) == (0, 1)
        assert build_search_url("bakery", "Shelbyville") not in sessions[0].visited

        assert "job_paused" in notifier.names()
        events = drain(subscription)
        assert isinstance(events[-1], JobPaused)
        assert events[-1].reason == "Manually paused by user"

    async def test_pause_then_resume_before_boundary_keeps_running(self, test_db, notifier):
        pages, links = site("bakery", "Springfield", ["p1"])
        more, _ = site("bakery", "Shelbyville", ["p2"])
        pages.update(more)
        job_id = await new_job(["bakery"], ["Springfield", "Shelbyville"])

        class PauseResumeSession(FakeSession):
            async def navigate_and_extract(self, url, extractor, check_challenge=True):
                if url == links[0]:
                    await db.transition_job(job_id, JobStatus.RUNNING, JobStatus.PAUSED)
                    await db.transition_job(job_id, JobStatus.PAUSED, JobStatus.PENDING)
                return await super().navigate_and_extract(url, extractor, check_challenge)

        status = await orchestrator(job_id, lambda: PauseResumeSession(pages=pages), notifier).run()

        assert status == JobStatus.COMPLETED
        assert (await db.get_job(job_id)).records_scraped == 2

    async def test_pause_during_final_pair_is_not_overwritten(self, test_db, notifier):
        pages, links = site("bakery", "Springfield", ["p1", "p2"])
        job_id = await new_job(["bakery"], ["Springfield"])

        status = await orchestrator(job_id, lambda: PausingSession(job_id, links[0], pages=pages), notifier).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.PAUSED
        assert job.status == JobStatus.PAUSED
        assert job.pause_reason == "Manually paused by user"
        assert job.completed_at is None
        assert job.records_scraped == 2
        assert "job_paused" in notifier.names()
        assert "job_completed" not in notifier.names()

        # Resuming finds nothing left to scrape and completes.
        await db.transition_job(job_id, JobStatus.PAUSED, JobStatus.PENDING, pause_reason=None)
        factory = SessionFactory(pages=pages)
        assert await orchestrator(job_id, factory, notifier).run() == JobStatus.COMPLETED
        assert factory.sessions[0].visited == []
        assert (await db.get_job(job_id)).status == JobStatus.COMPLETED

    async def test_start_does_not_override_a_concurrent_pause(self, test_db, notifier, monkeypatch):
        job_id = await new_job(["bakery"])
        real_get_job = db.get_job
        reads = []

        async def read_then_pause(job_id_):
            job = await real_get_job(job_id_)
            if not reads:
                await db.update_job(job_id_, status=JobStatus.PAUSED, pause_reason="Manually paused by user")
            reads.append(job_id_)
            return job

        monkeypatch.setattr(db, "get_job", read_then_pause)
        factory = SessionFactory(pages={})

        status = await orchestrator(job_id, factory, notifier).run()

        assert status == JobStatus.PAUSED
        assert factory.sessions == []
        assert (await real_get_job(job_id)).status == JobStatus.PAUSED
        assert "job_started" not in notifier.names()


@pytest.mark.asyncio
class TestFatalErrors:

    async def test_session_crash_fails_job_and_reraises(self, test_db, notifier):
        pages, links = site("bakery", None, ["p1", "p2"])
        job_id = await new_job(["bakery"])
        bus = EventBus()
        subscription = bus.subscribe(job_id)
        factory = SessionFactory(pages=pages, crash_urls=[links[1]])

        with pytest.raises(SessionCrashed):
            await orchestrator(job_id, factory, notifier, bus=bus).run()

        job = await db.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "Browser died" in job.error_message
        assert job.failed_at is not None
        assert job.records_scraped == 1
        assert factory.sessions[0].close_calls == 1
        assert "job_failed" in notifier.names()
        assert isinstance(drain(subscription)[-1], JobFailed)

    async def test_failed_job_retried_from_cursor(self, test_db, notifier):
        pages, links = site("bakery", None, ["p1", "p2"])
        job_id = await new_job(["bakery"])

        with pytest.raises(SessionCrashed):
            await orchestrator(job_id, SessionFactory(pages=pages, crash_urls=[links[1]]), notifier).run()
        status = await orchestrator(job_id, SessionFactory(pages=pages), notifier).run()

        job = await db.get_job(job_id)
        assert status == JobStatus.COMPLETED
        assert job.error_message is None
        assert job.records_scraped == 2

    async def test_missing_job(self, test_db, notifier):
        with pytest.raises(JobNotFound):
            await orchestrator("job_missing", SessionFactory(pages={}), notifier).run()
