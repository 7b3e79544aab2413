from services.database import DatabaseService
from models.job import IngestionJob, ConnectorState, TERMINAL_JOB_STATUSES
from errors import LeaseLostError
from utils.timestamps import utc_now, to_db_time, from_db_time
from config import settings
from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
import sqlite3
import uuid
import logging

logger = logging.getLogger(__name__)

JOB_COLUMNS = (
    "id, connector_id, status, checkpoint, started_at, finished_at, error_message, "
    "lease_owner, lease_expires_at, events_fetched, events_persisted, groups_failed, created_at"
)


def _row_to_job(row: sqlite3.Row) -> IngestionJob:
    data = dict(row)
    for key in ("checkpoint", "started_at", "finished_at", "lease_expires_at", "created_at"):
        data[key] = from_db_time(data[key])
    return IngestionJob(**data)


def _row_to_state(row: sqlite3.Row) -> ConnectorState:
    data = dict(row)
    for key in ("checkpoint", "last_sync_at"):
        data[key] = from_db_time(data[key])
    return ConnectorState(**data)


class JobService:
    """Ingestion job state machine: pending -> running -> completed | partial | failed

    Every transition is a conditional UPDATE so concurrent workers can never
    both own a job, and finishing requires still holding the lease.
    """

    def __init__(self, db: Optional[DatabaseService] = None, lease_timeout_seconds: Optional[int] = None):
        self.db = db or DatabaseService()
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds or settings.LEASE_TIMEOUT_SECONDS)

    # Jobs
    def create_job(self, connector_id: str) -> IngestionJob:
        """Create a pending job, or return the connector's active one"""
        with self.db.transaction():
            existing = self.get_active_job(connector_id)
            if existing:
                logger.info(f"Connector {connector_id} already has active job {existing.id} ({existing.status})")
                return existing

            state = self.get_connector_state(connector_id)
            job_id = str(uuid.uuid4())
            self.db.execute(
                """
                INSERT INTO ingestion_job (id, connector_id, status, checkpoint, created_at)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                (job_id, connector_id, to_db_time(state.checkpoint), to_db_time(utc_now())),
            )

        logger.info(f"Created ingestion job {job_id} for connector {connector_id}")
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        row = self.db.fetch_one(f"SELECT {JOB_COLUMNS} FROM ingestion_job WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def get_active_job(self, connector_id: str) -> Optional[IngestionJob]:
        row = self.db.fetch_one(
            f"SELECT {JOB_COLUMNS} FROM ingestion_job WHERE connector_id = ? AND status IN ('pending', 'running')",
            (connector_id,),
        )
        return _row_to_job(row) if row else None

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Status surface: {status, started_at, finished_at, error_message}"""
        job = self.get_job(job_id)
        return job.status_view() if job else None

    def list_jobs(self, connector_id: Optional[str] = None, limit: int = 20) -> List[IngestionJob]:
        if connector_id:
            rows = self.db.fetch_all(
                f"SELECT {JOB_COLUMNS} FROM ingestion_job WHERE connector_id = ? ORDER BY created_at DESC LIMIT ?",
                (connector_id, limit),
            )
        else:
            rows = self.db.fetch_all(
                f"SELECT {JOB_COLUMNS} FROM ingestion_job ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
        return [_row_to_job(row) for row in rows]

    # Leases
    def lease_next_job(
        self,
        worker_id: str,
        connector_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[IngestionJob]:
        """Atomically move the oldest pending job to running for this worker"""
        now = now or utc_now()
        with self.db.transaction():
            params: List[Any] = []
            query = "SELECT id FROM ingestion_job WHERE status = 'pending'"
            if connector_ids is not None:
                if not connector_ids:
                    return None
                query += f" AND connector_id IN ({','.join('?' for _ in connector_ids)})"
                params.extend(connector_ids)
            query += " ORDER BY created_at ASC LIMIT 1"

            row = self.db.fetch_one(query, params)
            if not row:
                return None

            cursor = self.db.execute(
                """
                UPDATE ingestion_job
                SET status = 'running', started_at = ?, lease_owner = ?, lease_expires_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_db_time(now), worker_id, to_db_time(now + self.lease_timeout), row["id"]),
            )
            if cursor.rowcount != 1:
                return None

        job = self.get_job(row["id"])
        logger.info(f"Worker {worker_id} leased job {job.id} ({job.connector_id})")
        return job

    def renew_lease(self, job_id: str, worker_id: str, now: Optional[datetime] = None) -> None:
        """Extend the lease; raises LeaseLostError if the worker no longer owns it"""
        now = now or utc_now()
        cursor = self.db.execute(
            """
            UPDATE ingestion_job SET lease_expires_at = ?
            WHERE id = ? AND status = 'running' AND lease_owner = ? AND lease_expires_at > ?
            """,
            (to_db_time(now + self.lease_timeout), job_id, worker_id, to_db_time(now)),
        )
        if cursor.rowcount != 1:
            raise LeaseLostError(job_id)

    def holds_lease(self, job_id: str, worker_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        row = self.db.fetch_one(
            """
            SELECT 1 FROM ingestion_job
            WHERE id = ? AND status = 'running' AND lease_owner = ? AND lease_expires_at > ?
            """,
            (job_id, worker_id, to_db_time(now)),
        )
        return row is not None

    def finish_job(
        self,
        job_id: str,
        worker_id: str,
        status: str,
        checkpoint: Optional[datetime] = None,
        error_message: Optional[str] = None,
        events_fetched: int = 0,
        events_persisted: int = 0,
        groups_failed: int = 0,
        next_sync_seconds: Optional[float] = None,
    ) -> IngestionJob:
        """Move a running job to a terminal status and advance the connector checkpoint

        The checkpoint only moves forward, and only for completed or partial runs.

        Raises:
            ValueError: status is not terminal
            LeaseLostError: the worker no longer holds the lease
        """
        if status not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"Invalid terminal status '{status}'")

        now = utc_now()
        with self.db.transaction():
            job = self.get_job(job_id)
            if job is None:
                raise LeaseLostError(job_id, "job not found")

            cursor = self.db.execute(
                """
                UPDATE ingestion_job
                SET status = ?, finished_at = ?, error_message = ?, lease_owner = NULL, lease_expires_at = NULL,
                    events_fetched = ?, events_persisted = ?, groups_failed = ?
                WHERE id = ? AND status = 'running' AND lease_owner = ?
                """,
                (status, to_db_time(now), error_message, events_fetched, events_persisted, groups_failed, job_id, worker_id),
            )
            if cursor.rowcount != 1:
                raise LeaseLostError(job_id, "lease lost before finish")

            state = self.get_connector_state(job.connector_id)
            new_checkpoint = state.checkpoint
            if status in ("completed", "partial") and checkpoint is not None:
                if new_checkpoint is None or checkpoint > new_checkpoint:
                    new_checkpoint = checkpoint

            failures = 0 if status == "completed" else state.consecutive_failures + 1
            self._save_connector_state(
                job.connector_id,
                checkpoint=new_checkpoint,
                last_sync_at=now,
                last_status=status,
                error_message=error_message,
                next_sync_seconds=next_sync_seconds,
                consecutive_failures=failures,
            )

        logger.info(
            f"Job {job_id} finished as {status} (fetched={events_fetched}, persisted={events_persisted}, "
            f"groups_failed={groups_failed}, checkpoint={to_db_time(new_checkpoint)})"
        )
        return self.get_job(job_id)

    def reclaim_expired_leases(self, now: Optional[datetime] = None) -> List[str]:
        """Mark running jobs whose lease expired as failed; returns their ids"""
        now = now or utc_now()
        reclaimed = []
        with self.db.transaction():
            rows = self.db.fetch_all(
                "SELECT id, connector_id, lease_owner FROM ingestion_job WHERE status = 'running' AND lease_expires_at <= ?",
                (to_db_time(now),),
            )
            for row in rows:
                message = f"Lease expired (worker {row['lease_owner']} stopped responding)"
                cursor = self.db.execute(
                    """
                    UPDATE ingestion_job
                    SET status = 'failed', finished_at = ?, error_message = ?, lease_owner = NULL, lease_expires_at = NULL
                    WHERE id = ? AND status = 'running' AND lease_expires_at <= ?
                    """,
                    (to_db_time(now), message, row["id"], to_db_time(now)),
                )
                if cursor.rowcount == 1:
                    state = self.get_connector_state(row["connector_id"])
                    self._save_connector_state(
                        row["connector_id"],
                        checkpoint=state.checkpoint,
                        last_sync_at=now,
                        last_status="failed",
                        error_message=message,
                        next_sync_seconds=state.next_sync_seconds,
                        consecutive_failures=state.consecutive_failures + 1,
                    )
                    reclaimed.append(row["id"])

        for job_id in reclaimed:
            logger.warning(f"Reclaimed stuck job {job_id}, marked failed")
        return reclaimed

    # Connector State
    def get_connector_state(self, connector_id: str) -> ConnectorState:
        row = self.db.fetch_one(
            """
            SELECT connector_id, checkpoint, last_sync_at, last_status, error_message,
                   next_sync_seconds, consecutive_failures
            FROM connector_state WHERE connector_id = ?
            """,
            (connector_id,),
        )
        return _row_to_state(row) if row else ConnectorState(connector_id=connector_id)

    def record_sync_schedule(self, connector_id: str, next_sync_seconds: float) -> None:
        state = self.get_connector_state(connector_id)
        self._save_connector_state(connector_id, **{**state.model_dump(exclude={"connector_id"}), "next_sync_seconds": next_sync_seconds})

    def _save_connector_state(
        self,
        connector_id: str,
        checkpoint: Optional[datetime],
        last_sync_at: Optional[datetime],
        last_status: Optional[str],
        error_message: Optional[str],
        next_sync_seconds: Optional[float],
        consecutive_failures: int,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO connector_state
              (connector_id, checkpoint, last_sync_at, last_status, error_message, next_sync_seconds, consecutive_failures)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connector_id) DO UPDATE SET
              checkpoint = excluded.checkpoint,
              last_sync_at = excluded.last_sync_at,
              last_status = excluded.last_status,
              error_message = excluded.error_message,
              next_sync_seconds = excluded.next_sync_seconds,
              consecutive_failures = excluded.consecutive_failures
            """,
            (
                connector_id,
                to_db_time(checkpoint),
                to_db_time(last_sync_at),
                last_status,
                error_message,
                next_sync_seconds,
                consecutive_failures,
            ),
        )

    def connector_health(self, connector_id: str) -> Dict[str, Any]:
        """healthy / degraded / failed, derived from the last runs"""
        state = self.get_connector_state(connector_id)
        active_job = self.get_active_job(connector_id)
        if state.last_status is None:
            status = "unknown"
        elif state.last_status == "completed":
            status = "healthy"
        elif state.last_status == "partial" or state.consecutive_failures < 3:
            status = "degraded"
        else:
            status = "failed"

        return {
            "connector_id": connector_id,
            "status": status,
            "last_sync_at": state.last_sync_at,
            "last_status": state.last_status,
            "error_message": state.error_message,
            "consecutive_failures": state.consecutive_failures,
            "checkpoint": state.checkpoint,
            "next_sync_seconds": state.next_sync_seconds,
            "active_job": active_job.status_view() if active_job else None,
        }
