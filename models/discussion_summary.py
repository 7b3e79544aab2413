from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class DiscussionSummary(BaseModel):
    entity_id: Optional[str] = None
    source_id: str
    thread_id: Optional[str] = None
    platform: str = ""
    participants: List[str] = []
    summary: str = ""
    key_points: List[str] = []
    action_items: List[str] = []
    file_refs: List[str] = []
    feature_refs: List[str] = []
    source_event_ids: List[str] = []
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True
