"""Tests for IngestionScheduler with a mocked APScheduler"""
import pytest
from unittest.mock import Mock
from config import settings
from agents.ingestor import Ingestor
from services.database import DatabaseService
from services.job_service import JobService
from services.knowledge_graph import KnowledgeGraphStore
from processors.context_processor import ContextProcessor
from schedulers.ingestion_scheduler import IngestionScheduler
from tests.fixtures.ingestion_fixtures import FakeConnector, platform_event, no_sleep


@pytest.fixture(autouse=True)
def long_lookback(monkeypatch):
    monkeypatch.setattr(settings, "INITIAL_LOOKBACK_HOURS", 24 * 365 * 20)


@pytest.fixture
def db():
    service = DatabaseService(":memory:")
    yield service
    service.close()


@pytest.fixture
def ingestor(db):
    store = KnowledgeGraphStore(db)
    connectors = {
        "github": FakeConnector("github", [platform_event(1, content="We decided to ship it")]),
        "slack": FakeConnector("slack", [platform_event(2, platform="slack")], platform="slack"),
    }
    return Ingestor(connectors, db=db, jobs=JobService(db), store=store,
                    processor=ContextProcessor(store), sleeper=no_sleep)


@pytest.fixture
def background():
    scheduler = Mock()
    scheduler.running = True
    return scheduler


@pytest.fixture
def scheduler(ingestor, background):
    return IngestionScheduler(ingestor, worker_count=2, poll_seconds=5, reaper_interval_seconds=60,
                              scheduler=background)


class TestStart:
    def test_registers_sync_worker_and_reaper_jobs(self, scheduler, background):
        scheduler.start()

        ids = [c.kwargs["id"] for c in background.add_job.call_args_list]
        assert ids == ["sync:github", "sync:slack", "worker:0", "worker:1", "lease_reaper"]
        background.start.assert_called_once()

    def test_sync_interval_comes_from_connector(self, scheduler, background):
        scheduler.start()

        sync_call = background.add_job.call_args_list[0]
        assert sync_call.kwargs["args"] == ["github"]
        assert sync_call.kwargs["trigger"].interval.total_seconds() == 300

    def test_workers_never_overlap(self, scheduler, background):
        scheduler.start()

        for call in background.add_job.call_args_list[2:4]:
            assert call.kwargs["max_instances"] == 1


class TestWork:
    def test_enqueue_creates_pending_job(self, scheduler, ingestor):
        job = scheduler.enqueue("github")

        assert job.status == "pending"
        assert ingestor.jobs.get_active_job("github").id == job.id

    def test_work_leases_and_runs_one_job(self, scheduler, ingestor, background):
        scheduler.enqueue("github")

        finished = scheduler.work(scheduler.worker_ids[0])

        assert finished.status == "completed"
        assert finished.lease_owner is None
        assert ingestor.jobs.get_active_job("github") is None
        background.reschedule_job.assert_called_once()
        assert background.reschedule_job.call_args.args == ("sync:github",)

    def test_work_without_pending_jobs(self, scheduler):
        assert scheduler.work(scheduler.worker_ids[0]) is None

    def test_work_errors_do_not_propagate(self, scheduler):
        scheduler.jobs = Mock()
        scheduler.jobs.lease_next_job.side_effect = RuntimeError("database is locked")

        assert scheduler.work(scheduler.worker_ids[0]) is None

    def test_reap_delegates_and_contains_errors(self, scheduler):
        scheduler.jobs = Mock()
        scheduler.jobs.reclaim_expired_leases.return_value = ["job-1"]
        assert scheduler.reap() == ["job-1"]

        scheduler.jobs.reclaim_expired_leases.side_effect = RuntimeError("boom")
        assert scheduler.reap() == []

    def test_run_once_syncs_every_connector(self, scheduler):
        jobs = scheduler.run_once()

        assert sorted(j.connector_id for j in jobs) == ["github", "slack"]
        assert all(j.status == "completed" for j in jobs)

    def test_run_once_for_selected_connectors(self, scheduler):
        jobs = scheduler.run_once(["slack"])

        assert [j.connector_id for j in jobs] == ["slack"]


class TestStop:
    def test_stop_cancels_and_shuts_down(self, scheduler, background):
        scheduler.stop(wait=False)

        assert all(event.is_set() for event in scheduler.cancel_events.values())
        background.shutdown.assert_called_once_with(wait=False)

    def test_no_new_work_after_stop(self, scheduler):
        scheduler.enqueue("github")
        scheduler.stop()

        assert scheduler.enqueue("slack") is None
        assert scheduler.work(scheduler.worker_ids[0]) is None
