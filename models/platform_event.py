from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime


class PlatformEvent(BaseModel):
    """Raw event as fetched from a platform, before normalization"""
    id: str
    type: str  # See SUPPORTED_EVENT_TYPES below
    timestamp: datetime
    author: str = ""
    content: str = ""
    title: str = ""
    metadata: Dict[str, Any] = {}
    references: List[str] = []
    platform: str

    class Config:
        from_attributes = True
        frozen = True


class NormalizedEvent(BaseModel):
    """Platform-independent event consumed by the context processor"""
    platform: str
    platform_id: str
    event_type: str
    timestamp: datetime
    author: str = ""
    content: str = ""
    title: str = ""

    # Conversation structure (NULL for standalone events)
    thread_id: Optional[str] = None
    parent_id: Optional[str] = None

    file_refs: List[str] = []
    feature_refs: List[str] = []
    labels: List[str] = []
    state: Optional[str] = None
    metadata: Dict[str, Any] = {}

    class Config:
        from_attributes = True
        frozen = True

    @property
    def event_key(self) -> str:
        """Stable identifier across platforms"""
        return f"{self.platform}:{self.platform_id}"


# Supported platform event types
SUPPORTED_EVENT_TYPES = {
    "pull_request": "Pull/merge request opened, updated or merged",
    "issue": "Issue or ticket",
    "commit": "Source control commit",
    "message": "Chat message",
    "thread": "Chat thread root",
    "reaction": "Reaction on a message",
    "file_change": "File level change notification",
    "discussion": "Long form discussion post",
}
