"""Tests for JobService - job state machine, leases, checkpoints"""
import pytest
from datetime import timedelta
from services.database import DatabaseService
from services.job_service import JobService
from errors import LeaseLostError
from utils.timestamps import utc_now
from tests.fixtures.ingestion_fixtures import at


@pytest.fixture
def db():
    """Fresh in-memory database"""
    service = DatabaseService(":memory:")
    yield service
    service.close()


@pytest.fixture
def jobs(db):
    return JobService(db, lease_timeout_seconds=60)


class TestJobLifecycle:
    def test_create_job_is_pending(self, jobs):
        job = jobs.create_job("github")

        assert job.status == "pending"
        assert job.started_at is None
        assert jobs.get_job_status(job.id) == {
            "id": job.id,
            "connector_id": "github",
            "status": "pending",
            "started_at": None,
            "finished_at": None,
            "error_message": None,
        }

    def test_create_job_returns_existing_active_job(self, jobs):
        first = jobs.create_job("github")
        second = jobs.create_job("github")

        assert first.id == second.id
        assert len(jobs.list_jobs("github")) == 1

    def test_separate_connectors_get_separate_jobs(self, jobs):
        assert jobs.create_job("github").id != jobs.create_job("slack").id

    def test_lease_moves_job_to_running(self, jobs):
        created = jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        assert job.id == created.id
        assert job.status == "running"
        assert job.lease_owner == "worker-1"
        assert job.started_at is not None
        assert job.lease_expires_at > job.started_at

    def test_job_leased_only_once(self, jobs):
        jobs.create_job("github")

        assert jobs.lease_next_job("worker-1") is not None
        assert jobs.lease_next_job("worker-2") is None

    def test_lease_respects_connector_filter(self, jobs):
        jobs.create_job("slack")

        assert jobs.lease_next_job("worker-1", connector_ids=["github"]) is None
        assert jobs.lease_next_job("worker-1", connector_ids=[]) is None
        assert jobs.lease_next_job("worker-1", connector_ids=["slack"]).connector_id == "slack"

    def test_finish_completed_advances_checkpoint(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        finished = jobs.finish_job(job.id, "worker-1", "completed", checkpoint=at(10), events_fetched=3, events_persisted=3)

        assert finished.status == "completed"
        assert finished.finished_at is not None
        assert finished.lease_owner is None
        assert jobs.get_connector_state("github").checkpoint == at(10)

    def test_checkpoint_never_moves_backwards(self, jobs):
        for checkpoint in (at(10), at(5)):
            jobs.create_job("github")
            job = jobs.lease_next_job("worker-1")
            jobs.finish_job(job.id, "worker-1", "completed", checkpoint=checkpoint)

        assert jobs.get_connector_state("github").checkpoint == at(10)

    def test_failed_job_leaves_checkpoint(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")
        jobs.finish_job(job.id, "worker-1", "completed", checkpoint=at(10))

        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")
        jobs.finish_job(job.id, "worker-1", "failed", checkpoint=at(20), error_message="boom")

        state = jobs.get_connector_state("github")
        assert state.checkpoint == at(10)
        assert state.last_status == "failed"
        assert state.consecutive_failures == 1

    def test_new_job_starts_from_connector_checkpoint(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")
        jobs.finish_job(job.id, "worker-1", "partial", checkpoint=at(7))

        assert jobs.create_job("github").checkpoint == at(7)

    def test_finish_rejects_non_terminal_status(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        with pytest.raises(ValueError):
            jobs.finish_job(job.id, "worker-1", "running")

    def test_finish_requires_lease(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        with pytest.raises(LeaseLostError):
            jobs.finish_job(job.id, "worker-2", "completed", checkpoint=at(10))

        assert jobs.get_job(job.id).status == "running"
        assert jobs.get_connector_state("github").checkpoint is None


class TestLeases:
    def test_renew_extends_lease(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        jobs.renew_lease(job.id, "worker-1", now=utc_now() + timedelta(seconds=30))

        assert jobs.get_job(job.id).lease_expires_at > job.lease_expires_at

    def test_renew_by_other_worker_fails(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        with pytest.raises(LeaseLostError):
            jobs.renew_lease(job.id, "worker-2")

    def test_reclaim_expired_lease_marks_failed(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")

        reclaimed = jobs.reclaim_expired_leases(now=utc_now() + timedelta(seconds=120))

        assert reclaimed == [job.id]
        status = jobs.get_job_status(job.id)
        assert status["status"] == "failed"
        assert "Lease expired" in status["error_message"]
        assert not jobs.holds_lease(job.id, "worker-1")

    def test_reclaim_ignores_live_leases(self, jobs):
        jobs.create_job("github")
        jobs.lease_next_job("worker-1")

        assert jobs.reclaim_expired_leases() == []

    def test_reclaimed_worker_cannot_finish(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")
        jobs.reclaim_expired_leases(now=utc_now() + timedelta(seconds=120))

        with pytest.raises(LeaseLostError):
            jobs.finish_job(job.id, "worker-1", "completed", checkpoint=at(10))

    def test_connector_can_run_again_after_reclaim(self, jobs):
        jobs.create_job("github")
        first = jobs.lease_next_job("worker-1")
        jobs.reclaim_expired_leases(now=utc_now() + timedelta(seconds=120))

        assert jobs.create_job("github").id != first.id


class TestConnectorHealth:
    def test_unknown_before_first_run(self, jobs):
        assert jobs.connector_health("github")["status"] == "unknown"

    def test_healthy_after_completed(self, jobs):
        jobs.create_job("github")
        job = jobs.lease_next_job("worker-1")
        jobs.finish_job(job.id, "worker-1", "completed")

        assert jobs.connector_health("github")["status"] == "healthy"

    def test_failed_after_repeated_failures(self, jobs):
        for _ in range(3):
            jobs.create_job("github")
            job = jobs.lease_next_job("worker-1")
            jobs.finish_job(job.id, "worker-1", "failed", error_message="auth")

        health = jobs.connector_health("github")
        assert health["status"] == "failed"
        assert health["consecutive_failures"] == 3

    def test_record_sync_schedule(self, jobs):
        jobs.record_sync_schedule("github", 600.0)
        assert jobs.get_connector_state("github").next_sync_seconds == 600.0
