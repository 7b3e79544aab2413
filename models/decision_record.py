from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class DecisionRecord(BaseModel):
    entity_id: Optional[str] = None  # Owning decision entity, set on save
    source_id: str
    title: str
    description: str = ""
    rationale: str = ""
    alternatives: List[str] = []
    consequences: List[str] = []
    status: str = "active"  # See DECISION_STATUSES below
    superseded_by: Optional[str] = None
    participants: List[str] = []
    source_event_ids: List[str] = []
    platform: str = ""
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True


DECISION_STATUSES = {
    "active": "Decision currently in effect",
    "superseded": "Replaced by a later decision (see superseded_by)",
    "deprecated": "No longer applies, not replaced",
}
