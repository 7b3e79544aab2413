from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class IngestionJob(BaseModel):
    id: str
    connector_id: str
    status: str  # See JOB_STATUSES below
    checkpoint: Optional[datetime] = None  # Checkpoint the run started from

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None

    # Lease (only set while running)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    # Run statistics
    events_fetched: int = 0
    events_persisted: int = 0
    groups_failed: int = 0

    created_at: datetime

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def status_view(self) -> dict:
        """Status surface exposed for polling"""
        return {
            "id": self.id,
            "connector_id": self.connector_id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error_message": self.error_message,
        }


class ConnectorState(BaseModel):
    """Per-connector sync state, owned by the job service"""
    connector_id: str
    checkpoint: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_status: Optional[str] = None
    error_message: Optional[str] = None
    next_sync_seconds: Optional[float] = None
    consecutive_failures: int = 0

    class Config:
        from_attributes = True


JOB_STATUSES = {
    "pending": "Created, waiting for a worker to lease it",
    "running": "Leased by a worker",
    "completed": "All pages processed without errors",
    "partial": "Some events persisted, at least one page or group failed",
    "failed": "Nothing persisted, or the lease expired",
}

ACTIVE_JOB_STATUSES = ("pending", "running")
TERMINAL_JOB_STATUSES = ("completed", "partial", "failed")
