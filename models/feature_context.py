from pydantic import BaseModel
from typing import Optional, List


class FeatureContext(BaseModel):
    entity_id: Optional[str] = None
    source_id: str  # Slug of the feature name
    name: str
    description: str = ""
    status: str = "in_progress"  # See FEATURE_STATUSES below
    files: List[str] = []
    contributors: List[str] = []
    source_event_ids: List[str] = []

    class Config:
        from_attributes = True


FEATURE_STATUSES = {
    "planned": "Mentioned as upcoming work",
    "in_progress": "Being worked on",
    "completed": "Shipped or done",
    "cancelled": "Dropped",
}
