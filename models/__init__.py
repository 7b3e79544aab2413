# Models module - Pydantic models for events, jobs and the knowledge graph
from models.platform_event import PlatformEvent, NormalizedEvent
from models.job import IngestionJob, ConnectorState
from models.knowledge_entity import KnowledgeEntity
from models.knowledge_relationship import KnowledgeRelationship
from models.decision_record import DecisionRecord
from models.discussion_summary import DiscussionSummary
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory
from models.extraction import (
    EntityRef,
    RelationshipCandidate,
    EventGroup,
    ExtractionResult,
    GroupError,
    ProcessingResult,
)
from models.graph_path import GraphPath

__all__ = [
    "PlatformEvent",
    "NormalizedEvent",
    "IngestionJob",
    "ConnectorState",
    "KnowledgeEntity",
    "KnowledgeRelationship",
    "DecisionRecord",
    "DiscussionSummary",
    "FeatureContext",
    "FileContextHistory",
    "EntityRef",
    "RelationshipCandidate",
    "EventGroup",
    "ExtractionResult",
    "GroupError",
    "ProcessingResult",
    "GraphPath",
]
