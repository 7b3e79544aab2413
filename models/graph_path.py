from pydantic import BaseModel
from typing import List
from models.knowledge_entity import KnowledgeEntity
from models.knowledge_relationship import KnowledgeRelationship


class GraphPath(BaseModel):
    """One path found by a traversal, start entity first"""
    entities: List[KnowledgeEntity]
    relationships: List[KnowledgeRelationship]

    @property
    def depth(self) -> int:
        return len(self.relationships)

    @property
    def total_strength(self) -> float:
        return sum(r.strength for r in self.relationships)

    @property
    def end(self) -> KnowledgeEntity:
        return self.entities[-1]
