from services.database import DatabaseService
from services.job_service import JobService
from services.knowledge_graph import KnowledgeGraphStore
from services.retry_controller import RetryController, RetryPolicy, RateLimiter
from processors.context_processor import ContextProcessor
from connectors.base import BaseConnector
from models.job import IngestionJob
from models.platform_event import NormalizedEvent
from errors import AuthError, ConnectorError, RateLimitExceeded, LeaseLostError
from utils.timestamps import utc_now, ensure_utc
from config import settings
from typing import Dict, List, Optional, Callable
from datetime import datetime, timedelta
import threading
import time
import logging

logger = logging.getLogger(__name__)


class SyncOutcome:
    """Accumulates what one job run fetched, persisted and failed"""

    def __init__(self):
        self.events_fetched = 0
        self.events_persisted = 0
        self.groups_failed = 0
        self.safe_timestamps: List[datetime] = []
        self.failed_timestamps: List[datetime] = []
        self.latest_seen: Optional[datetime] = None
        self.errors: List[str] = []
        self.fetch_error: Optional[ConnectorError] = None

    def saw(self, timestamp: datetime) -> None:
        if self.latest_seen is None or timestamp > self.latest_seen:
            self.latest_seen = timestamp

    @property
    def made_progress(self) -> bool:
        return self.events_persisted > 0 or bool(self.safe_timestamps)

    def checkpoint(self) -> Optional[datetime]:
        """Latest safe timestamp, strictly before the earliest failed event"""
        if not self.failed_timestamps and self.fetch_error is None:
            return self.latest_seen
        safe = self.safe_timestamps
        if self.failed_timestamps:
            earliest_failed = min(self.failed_timestamps)
            safe = [t for t in safe if t < earliest_failed]
        return max(safe) if safe else None


class Ingestor:
    """Runs ingestion jobs end to end for the configured connectors

    Pipeline per job:
    1. Authenticate
    2. Fetch pages through the retry controller, from the connector checkpoint
    3. Normalize, record and drop events already processed
    4. Extract and persist via the context processor
    5. Compute the checkpoint and finish the job under its lease
    """

    def __init__(
        self,
        connectors: Dict[str, BaseConnector],
        db: Optional[DatabaseService] = None,
        jobs: Optional[JobService] = None,
        store: Optional[KnowledgeGraphStore] = None,
        processor: Optional[ContextProcessor] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        sleeper: Optional[Callable[[float, Optional[threading.Event]], None]] = None,
    ):
        self.db = db or DatabaseService()
        self.connectors = connectors
        self.jobs = jobs or JobService(self.db)
        self.store = store or KnowledgeGraphStore(self.db)
        self.processor = processor or ContextProcessor(self.store)
        # None falls back to each connector's configured batch size
        self.page_size = page_size or settings.FETCH_PAGE_SIZE
        self.max_pages = max_pages or settings.MAX_PAGES_PER_JOB

        # One controller (and token bucket) per connector
        self.controllers: Dict[str, RetryController] = {}
        for connector_id, connector in connectors.items():
            rate_limit = connector.config.rate_limit
            self.controllers[connector_id] = RetryController(
                policy=RetryPolicy.from_rate_limit(rate_limit),
                rate_limiter=RateLimiter(rate_limit.requests_per_minute, rate_limit.burst),
                sleeper=sleeper,
            )

        logger.info(f"Ingestor initialized with connectors: {sorted(connectors)}")

    def sync(self, connector_id: str, worker_id: str = "manual", cancel_event: Optional[threading.Event] = None) -> Optional[IngestionJob]:
        """Create (or reuse) a job for one connector and run it in this thread"""
        self.jobs.create_job(connector_id)
        job = self.jobs.lease_next_job(worker_id, connector_ids=[connector_id])
        if job is None:
            logger.info(f"No pending job to run for {connector_id} (already running elsewhere)")
            return self.jobs.get_active_job(connector_id)
        return self.run_job(job, worker_id, cancel_event)

    def run_job(self, job: IngestionJob, worker_id: str, cancel_event: Optional[threading.Event] = None) -> Optional[IngestionJob]:
        """
        Run a leased job to a terminal state

        Args:
            job: Job in status running, leased by worker_id
            worker_id: Lease owner
            cancel_event: Aborts waits and processing when set

        Returns:
            The finished job, or None if the lease was lost
        """
        start_time = time.time()
        connector = self.connectors.get(job.connector_id)
        if connector is None:
            return self._finish(job, worker_id, "failed", None, SyncOutcome(),
                                f"Connector {job.connector_id} is not configured or disabled")

        outcome = SyncOutcome()
        rate_limited = False
        try:
            logger.info(f"Starting job {job.id} for {job.connector_id}")
            self._run_pages(job, worker_id, connector, outcome, cancel_event)
        except LeaseLostError as e:
            logger.warning(f"Job {job.id} stopped: {e}")
            return None
        except AuthError as e:
            logger.error(f"Job {job.id} authentication failed: {e}")
            return self._finish(job, worker_id, "failed", connector, outcome, f"Authentication failed: {e.message}")
        except ConnectorError as e:
            rate_limited = isinstance(e, RateLimitExceeded)
            outcome.fetch_error = e
            outcome.errors.append(f"Fetch failed: {e.message}")
            logger.error(f"Job {job.id} fetch failed after retries: {e}")

        if outcome.fetch_error is not None and not outcome.made_progress:
            status = "failed"
        elif outcome.groups_failed and outcome.events_persisted == 0:
            status = "failed"
        elif outcome.fetch_error is not None or outcome.groups_failed:
            status = "partial"
        else:
            status = "completed"

        error_message = "; ".join(outcome.errors[:5]) or None
        if len(outcome.errors) > 5:
            error_message += f"; ... {len(outcome.errors) - 5} more"

        finished = self._finish(job, worker_id, status, connector, outcome, error_message, rate_limited)
        logger.info(f"Job {job.id} took {time.time() - start_time:.2f}s")
        return finished

    @staticmethod
    def initial_lookback(connector: BaseConnector) -> timedelta:
        """How far back a connector's first sync reaches

        INITIAL_LOOKBACK_HOURS overrides every connector, otherwise each uses
        its own max_lookback_days.
        """
        if settings.INITIAL_LOOKBACK_HOURS is not None:
            return timedelta(hours=settings.INITIAL_LOOKBACK_HOURS)
        return timedelta(days=connector.config.sync.max_lookback_days)

    def _run_pages(
        self,
        job: IngestionJob,
        worker_id: str,
        connector: BaseConnector,
        outcome: SyncOutcome,
        cancel_event: Optional[threading.Event],
    ) -> None:
        controller = self.controllers[job.connector_id]
        credential = controller.call(connector.authenticate, cancel_event=cancel_event)

        since = job.checkpoint or self.jobs.get_connector_state(job.connector_id).checkpoint
        if since is None:
            since = utc_now() - self.initial_lookback(connector)
        since = ensure_utc(since)
        page_size = self.page_size or connector.config.sync.batch_size

        # Pages are contiguous, only an empty page means the stream is drained
        for page in range(1, self.max_pages + 1):
            events = controller.call(connector.fetch_events, credential, since, page_size, cancel_event=cancel_event)
            self.jobs.renew_lease(job.id, worker_id)
            logger.info(f"[{job.connector_id}] page {page}: {len(events)} events since {since.isoformat()}")
            if not events:
                break

            outcome.events_fetched += len(events)
            for event in events:
                outcome.saw(ensure_utc(event.timestamp))

            normalized = connector.normalize_data(events)
            self._process_page(job, worker_id, normalized, outcome, cancel_event)

            # Dropped (malformed) events never block the checkpoint
            kept = {e.platform_id for e in normalized}
            outcome.safe_timestamps.extend(ensure_utc(e.timestamp) for e in events if e.id not in kept)

            since = max(ensure_utc(e.timestamp) for e in events)
        else:
            logger.info(f"[{job.connector_id}] reached {self.max_pages} pages, continuing next run")

    def _process_page(
        self,
        job: IngestionJob,
        worker_id: str,
        events: List[NormalizedEvent],
        outcome: SyncOutcome,
        cancel_event: Optional[threading.Event],
    ) -> None:
        self.db.record_events(job.connector_id, events)
        pending = self.db.filter_unprocessed(events)

        pending_keys = {e.event_key for e in pending}
        # Already processed with identical content
        outcome.safe_timestamps.extend(ensure_utc(e.timestamp) for e in events if e.event_key not in pending_keys)
        if not pending:
            return

        stop = threading.Event()

        def heartbeat() -> None:
            # Runs before each group; a lost lease stops the page before another write
            if cancel_event is not None and cancel_event.is_set():
                stop.set()
                return
            try:
                self.jobs.renew_lease(job.id, worker_id)
            except LeaseLostError as e:
                logger.warning(f"Job {job.id} lost its lease during processing: {e}")
                stop.set()

        result = self.processor.process(pending, stop, heartbeat=heartbeat)

        by_key = {e.event_key: e for e in pending}
        if result.persisted_event_ids:
            self.db.mark_events(result.persisted_event_ids, "processed")
            outcome.events_persisted += len(result.persisted_event_ids)
            outcome.safe_timestamps.extend(ensure_utc(by_key[k].timestamp) for k in result.persisted_event_ids)

        for error in result.errors:
            self.db.mark_events(error.event_ids, "failed", error.message)
            outcome.failed_timestamps.extend(ensure_utc(by_key[k].timestamp) for k in error.event_ids)
            outcome.errors.append(f"{error.error_type} in {error.group_key}: {error.message}")
        outcome.groups_failed += len(result.errors)

        if result.cancelled:
            raise LeaseLostError(job.id, "cancelled during processing")

    def _finish(
        self,
        job: IngestionJob,
        worker_id: str,
        status: str,
        connector: Optional[BaseConnector],
        outcome: SyncOutcome,
        error_message: Optional[str],
        rate_limited: bool = False,
    ) -> Optional[IngestionJob]:
        checkpoint = outcome.checkpoint() if status in ("completed", "partial") else None

        next_sync = None
        if connector is not None:
            state = self.jobs.get_connector_state(job.connector_id)
            next_sync = connector.schedule_sync(state.last_sync_at, rate_limited=rate_limited).total_seconds()

        try:
            return self.jobs.finish_job(
                job.id,
                worker_id,
                status,
                checkpoint=checkpoint,
                error_message=error_message,
                events_fetched=outcome.events_fetched,
                events_persisted=outcome.events_persisted,
                groups_failed=outcome.groups_failed,
                next_sync_seconds=next_sync,
            )
        except LeaseLostError as e:
            logger.warning(f"Could not finish job {job.id}: {e}")
            return None
