from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from models.platform_event import NormalizedEvent
from models.decision_record import DecisionRecord
from models.discussion_summary import DiscussionSummary
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory


class EntityRef(BaseModel):
    """Reference to an entity by its stable key, before ids are known"""
    type: str
    source_id: str

    class Config:
        frozen = True


class RelationshipCandidate(BaseModel):
    source: EntityRef
    target: EntityRef
    type: str
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = {}

    @property
    def key(self) -> tuple:
        return (self.source, self.target, self.type)


class EventGroup(BaseModel):
    """Related events processed together (one thread, file or feature)"""
    key: str
    kind: str  # 'thread', 'file', 'feature', 'single'
    events: List[NormalizedEvent]

    @property
    def event_ids(self) -> List[str]:
        return [e.event_key for e in self.events]

    @property
    def participants(self) -> List[str]:
        seen = []
        for event in self.events:
            if event.author and event.author not in seen:
                seen.append(event.author)
        return seen


class ExtractionResult(BaseModel):
    """Structured output of the extraction capability for one group"""
    decisions: List[DecisionRecord] = []
    discussion: Optional[DiscussionSummary] = None
    features: List[FeatureContext] = []
    files: List[FileContextHistory] = []
    relationships: List[RelationshipCandidate] = []


class GroupError(BaseModel):
    group_key: str
    error_type: str
    message: str
    event_ids: List[str] = []


class ProcessingResult(BaseModel):
    groups_total: int = 0
    groups_persisted: int = 0
    entities_upserted: int = 0
    relationships_upserted: int = 0
    persisted_event_ids: List[str] = []
    failed_event_ids: List[str] = []
    errors: List[GroupError] = []
    cancelled: bool = False

    @property
    def has_failures(self) -> bool:
        return len(self.errors) > 0
