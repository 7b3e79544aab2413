"""
Ingestion Scheduler

Drives connector syncs on APScheduler:
- One enqueue job per connector, on the interval its schedule_sync returns
- WORKER_COUNT worker jobs that lease pending ingestion jobs and run them
- A reaper that fails jobs whose lease expired (crashed or stuck workers)

Workers never share a job: leasing is an atomic conditional update, and each
worker job runs with max_instances=1.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from agents.ingestor import Ingestor
from models.job import IngestionJob
from utils.timestamps import utc_now
from config import settings
from typing import Dict, List, Optional
import threading
import socket
import os
import logging

logger = logging.getLogger(__name__)


class IngestionScheduler:
    """Background scheduling of ingestion jobs for every configured connector"""

    def __init__(
        self,
        ingestor: Ingestor,
        worker_count: Optional[int] = None,
        poll_seconds: Optional[int] = None,
        reaper_interval_seconds: Optional[int] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.ingestor = ingestor
        self.jobs = ingestor.jobs
        self.worker_count = worker_count or settings.WORKER_COUNT
        self.poll_seconds = poll_seconds or settings.WORKER_POLL_SECONDS
        self.reaper_interval_seconds = reaper_interval_seconds or settings.REAPER_INTERVAL_SECONDS
        self.scheduler = scheduler or BackgroundScheduler()

        prefix = f"{socket.gethostname()}-{os.getpid()}"
        self.worker_ids = [f"{prefix}-worker-{i}" for i in range(self.worker_count)]
        self.cancel_events: Dict[str, threading.Event] = {
            worker_id: threading.Event() for worker_id in self.worker_ids + ["run-once"]
        }
        self._stopping = threading.Event()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def enqueue(self, connector_id: str) -> Optional[IngestionJob]:
        """Create a pending job for the connector (no-op if one is active)"""
        if self._stopping.is_set():
            return None
        try:
            return self.jobs.create_job(connector_id)
        except Exception as e:
            logger.error(f"Failed to enqueue sync for {connector_id}: {e}", exc_info=True)
            return None

    def work(self, worker_id: str) -> Optional[IngestionJob]:
        """Lease and run at most one pending job"""
        if self._stopping.is_set():
            return None

        try:
            job = self.jobs.lease_next_job(worker_id, connector_ids=list(self.ingestor.connectors))
            if job is None:
                return None

            finished = self.ingestor.run_job(job, worker_id, self.cancel_events[worker_id])
            self._reschedule(job.connector_id)
            return finished
        except Exception as e:
            # Don't raise - a failing tick must not kill the worker job
            logger.error(f"Worker {worker_id} tick failed: {e}", exc_info=True)
            return None

    def reap(self) -> List[str]:
        try:
            return self.jobs.reclaim_expired_leases()
        except Exception as e:
            logger.error(f"Lease reaper failed: {e}", exc_info=True)
            return []

    def _reschedule(self, connector_id: str) -> None:
        """Apply the interval computed by the last run (doubled after rate limits)"""
        seconds = self.jobs.get_connector_state(connector_id).next_sync_seconds
        job_id = f"sync:{connector_id}"
        if not seconds or not self.scheduler.running or self.scheduler.get_job(job_id) is None:
            return
        self.scheduler.reschedule_job(job_id, trigger=IntervalTrigger(seconds=int(seconds)))
        logger.info(f"Next sync for {connector_id} in {int(seconds)}s")

    def start(self) -> None:
        """Register all jobs and start the background scheduler"""
        for connector_id, connector in self.ingestor.connectors.items():
            state = self.jobs.get_connector_state(connector_id)
            interval = connector.schedule_sync(state.last_sync_at)
            self.scheduler.add_job(
                self.enqueue,
                trigger=IntervalTrigger(seconds=int(interval.total_seconds())),
                args=[connector_id],
                id=f"sync:{connector_id}",
                name=f"Sync {connector_id}",
                next_run_time=utc_now(),
                replace_existing=True
            )

        for index, worker_id in enumerate(self.worker_ids):
            self.scheduler.add_job(
                self.work,
                trigger=IntervalTrigger(seconds=self.poll_seconds),
                args=[worker_id],
                id=f"worker:{index}",
                name=f"Ingestion worker {index}",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.scheduler.add_job(
            self.reap,
            trigger=IntervalTrigger(seconds=self.reaper_interval_seconds),
            id="lease_reaper",
            name="Ingestion lease reaper",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.start()
        logger.info(
            f"Ingestion scheduler started ({len(self.ingestor.connectors)} connectors, "
            f"{self.worker_count} workers, poll {self.poll_seconds}s)"
        )

    def run_once(self, connector_ids: Optional[List[str]] = None) -> List[IngestionJob]:
        """Sync the given (default: all) connectors in the calling thread"""
        finished = []
        for connector_id in connector_ids or list(self.ingestor.connectors):
            job = self.ingestor.sync(connector_id, worker_id="run-once", cancel_event=self.cancel_events["run-once"])
            if job is not None:
                finished.append(job)
        return finished

    def stop(self, wait: bool = True) -> None:
        """Cancel in-flight work, then shut the scheduler down"""
        self._stopping.set()
        for event in self.cancel_events.values():
            event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Ingestion scheduler stopped")

    def describe_jobs(self) -> List[Dict]:
        return [
            {"id": job.id, "name": job.name, "next_run_time": job.next_run_time}
            for job in self.scheduler.get_jobs()
        ]
