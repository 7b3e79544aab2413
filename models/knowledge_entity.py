from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime


class KnowledgeEntity(BaseModel):
    id: Optional[str] = None  # Assigned by the store on first upsert
    type: str  # See SUPPORTED_ENTITY_TYPES below
    source_id: str  # Stable key of the originating platform object
    name: str
    description: str = ""
    metadata: Dict[str, Any] = {}
    embedding: Optional[List[float]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


SUPPORTED_ENTITY_TYPES = {
    "feature": "Product feature or capability",
    "file": "Source file, keyed by repository path",
    "decision": "Technical decision extracted from a discussion or PR",
    "discussion": "Conversation thread or PR/issue discussion",
    "contributor": "Person acting on a platform",
}
