from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class KnowledgeRelationship(BaseModel):
    id: Optional[str] = None
    source_entity_id: str
    target_entity_id: str
    type: str  # See SUPPORTED_RELATIONSHIP_TYPES below
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def key(self) -> tuple:
        return (self.source_entity_id, self.target_entity_id, self.type)


SUPPORTED_RELATIONSHIP_TYPES = {
    "relates_to": "General connection (e.g., Decision relates_to File)",
    "introduced_by": "Origin (e.g., Decision introduced_by Feature, Decision introduced_by Contributor)",
    "modified_by": "Change (e.g., File modified_by Contributor, Feature modified_by File)",
    "discussed_in": "Discussion (e.g., Decision discussed_in Discussion)",
}
