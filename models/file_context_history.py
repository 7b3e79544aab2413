from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class FileContextHistory(BaseModel):
    entity_id: Optional[str] = None
    path: str
    change_reasons: List[str] = []
    contributors: List[str] = []
    related_decisions: List[str] = []  # Decision source ids
    source_event_ids: List[str] = []
    last_modified: Optional[datetime] = None

    class Config:
        from_attributes = True
