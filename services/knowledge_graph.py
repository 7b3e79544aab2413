from services.database import DatabaseService
from services.embeddings import EmbeddingsService
from models.knowledge_entity import KnowledgeEntity, SUPPORTED_ENTITY_TYPES
from models.knowledge_relationship import KnowledgeRelationship, SUPPORTED_RELATIONSHIP_TYPES
from models.decision_record import DecisionRecord, DECISION_STATUSES
from models.discussion_summary import DiscussionSummary
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory
from models.graph_path import GraphPath
from errors import IntegrityError
from utils.string_list import encode_string_list, decode_string_list, merge_string_lists
from utils.timestamps import utc_now, to_db_time, from_db_time
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
import numpy as np
import sqlite3
import json
import uuid
import logging

logger = logging.getLogger(__name__)

ENTITY_COLUMNS = "id, type, source_id, name, description, metadata_json, embedding_json, created_at, updated_at"
RELATIONSHIP_COLUMNS = "id, source_entity_id, target_entity_id, type, strength, metadata_json, created_at, updated_at"

# Upper bound on paths returned by one traversal
MAX_TRAVERSAL_PATHS = 1000


def _row_to_entity(row: sqlite3.Row) -> KnowledgeEntity:
    return KnowledgeEntity(
        id=row["id"],
        type=row["type"],
        source_id=row["source_id"],
        name=row["name"],
        description=row["description"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        embedding=json.loads(row["embedding_json"]) if row["embedding_json"] else None,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_relationship(row: sqlite3.Row, prefix: str = "") -> KnowledgeRelationship:
    return KnowledgeRelationship(
        id=row[f"{prefix}id"],
        source_entity_id=row[f"{prefix}source_entity_id"],
        target_entity_id=row[f"{prefix}target_entity_id"],
        type=row[f"{prefix}type"],
        strength=row[f"{prefix}strength"],
        metadata=json.loads(row[f"{prefix}metadata_json"] or "{}"),
        created_at=from_db_time(row[f"{prefix}created_at"]),
        updated_at=from_db_time(row[f"{prefix}updated_at"]),
    )


class KnowledgeGraphStore:
    """Persists knowledge entities, relationships and their typed projections

    Entities are unique on (type, source_id) and relationships on
    (source, target, type), so every write is an upsert and re-ingesting the
    same events never adds rows.
    """

    def __init__(self, db: Optional[DatabaseService] = None, embeddings: Optional[EmbeddingsService] = None):
        self.db = db or DatabaseService()
        self.embeddings = embeddings or EmbeddingsService()

    def transaction(self):
        """One logical unit of work (an event group's artifacts)"""
        return self.db.transaction()

    # Entities
    def upsert_entity(self, entity: KnowledgeEntity) -> str:
        """Insert or update an entity keyed by (type, source_id)

        Metadata is merged key by key; an empty description or a missing
        embedding never overwrites a stored one.

        Returns:
            Entity id (stable across upserts)
        """
        if entity.type not in SUPPORTED_ENTITY_TYPES:
            raise IntegrityError(f"Unsupported entity type '{entity.type}'")
        if not entity.source_id:
            raise IntegrityError(f"Entity '{entity.name}' has no source_id")

        now = to_db_time(utc_now())
        embedding_json = json.dumps(entity.embedding) if entity.embedding else None

        with self.db.transaction():
            row = self.db.fetch_one(
                "SELECT id, description, metadata_json, embedding_json FROM knowledge_entity WHERE type = ? AND source_id = ?",
                (entity.type, entity.source_id),
            )
            if row:
                metadata = {**json.loads(row["metadata_json"] or "{}"), **entity.metadata}
                self.db.execute(
                    """
                    UPDATE knowledge_entity
                    SET name = ?, description = ?, metadata_json = ?, embedding_json = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        entity.name,
                        entity.description or row["description"],
                        json.dumps(metadata, sort_keys=True),
                        embedding_json or row["embedding_json"],
                        now,
                        row["id"],
                    ),
                )
                return row["id"]

            entity_id = entity.id or str(uuid.uuid4())
            self.db.execute(
                f"INSERT INTO knowledge_entity ({ENTITY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entity_id,
                    entity.type,
                    entity.source_id,
                    entity.name,
                    entity.description,
                    json.dumps(entity.metadata, sort_keys=True),
                    embedding_json,
                    to_db_time(entity.created_at) or now,
                    now,
                ),
            )
            logger.debug(f"Created {entity.type} entity '{entity.name}' ({entity_id})")
            return entity_id

    def get_entity(self, entity_id: str) -> Optional[KnowledgeEntity]:
        row = self.db.fetch_one(f"SELECT {ENTITY_COLUMNS} FROM knowledge_entity WHERE id = ?", (entity_id,))
        return _row_to_entity(row) if row else None

    def find_entity(self, entity_type: str, source_id: str) -> Optional[KnowledgeEntity]:
        row = self.db.fetch_one(
            f"SELECT {ENTITY_COLUMNS} FROM knowledge_entity WHERE type = ? AND source_id = ?",
            (entity_type, source_id),
        )
        return _row_to_entity(row) if row else None

    def entity_id_for(self, entity_type: str, source_id: str) -> Optional[str]:
        row = self.db.fetch_one(
            "SELECT id FROM knowledge_entity WHERE type = ? AND source_id = ?",
            (entity_type, source_id),
        )
        return row["id"] if row else None

    def delete_entity(self, entity_id: str) -> bool:
        """Remove an entity; its edges become dangling until pruned"""
        cursor = self.db.execute("DELETE FROM knowledge_entity WHERE id = ?", (entity_id,))
        return cursor.rowcount == 1

    def count_entities(self, entity_type: Optional[str] = None) -> int:
        if entity_type:
            row = self.db.fetch_one("SELECT COUNT(*) AS n FROM knowledge_entity WHERE type = ?", (entity_type,))
        else:
            row = self.db.fetch_one("SELECT COUNT(*) AS n FROM knowledge_entity")
        return row["n"]

    def recent_entities(
        self,
        entity_types: Optional[List[str]] = None,
        limit: int = 20,
        since: Optional[datetime] = None,
    ) -> List[KnowledgeEntity]:
        query = f"SELECT {ENTITY_COLUMNS} FROM knowledge_entity WHERE 1 = 1"
        params: List[Any] = []
        if entity_types:
            query += f" AND type IN ({','.join('?' for _ in entity_types)})"
            params.extend(entity_types)
        if since:
            query += " AND updated_at > ?"
            params.append(to_db_time(since))
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        return [_row_to_entity(row) for row in self.db.fetch_all(query, params)]

    def search_entities(self, query: str, entity_types: Optional[List[str]] = None, limit: int = 20) -> List[KnowledgeEntity]:
        """Case-insensitive substring match on name, source id and description"""
        pattern = f"%{query.lower()}%"
        sql = (
            f"SELECT {ENTITY_COLUMNS} FROM knowledge_entity "
            "WHERE (lower(name) LIKE ? OR lower(source_id) LIKE ? OR lower(description) LIKE ?)"
        )
        params: List[Any] = [pattern, pattern, pattern]
        if entity_types:
            sql += f" AND type IN ({','.join('?' for _ in entity_types)})"
            params.extend(entity_types)
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        return [_row_to_entity(row) for row in self.db.fetch_all(sql, params)]

    # Relationships
    def upsert_relationship(self, relationship: KnowledgeRelationship, prefer: str = "max") -> str:
        """Insert or update an edge keyed by (source, target, type)

        Args:
            relationship: Edge to write; both endpoints must exist
            prefer: 'max' keeps the higher strength, 'newer' takes the incoming one

        Raises:
            IntegrityError: missing endpoint or unsupported type
        """
        if relationship.type not in SUPPORTED_RELATIONSHIP_TYPES:
            raise IntegrityError(f"Unsupported relationship type '{relationship.type}'")
        if prefer not in ("max", "newer"):
            raise ValueError(f"prefer must be 'max' or 'newer', got '{prefer}'")

        now = to_db_time(utc_now())
        with self.db.transaction():
            for endpoint in (relationship.source_entity_id, relationship.target_entity_id):
                if not self.db.fetch_one("SELECT 1 FROM knowledge_entity WHERE id = ?", (endpoint,)):
                    raise IntegrityError(
                        f"Relationship {relationship.type} references missing entity {endpoint}"
                    )

            row = self.db.fetch_one(
                """
                SELECT id, strength, metadata_json FROM knowledge_relationship
                WHERE source_entity_id = ? AND target_entity_id = ? AND type = ?
                """,
                relationship.key,
            )
            if row:
                strength = relationship.strength
                if prefer == "max":
                    strength = max(row["strength"], relationship.strength)
                metadata = {**json.loads(row["metadata_json"] or "{}"), **relationship.metadata}
                self.db.execute(
                    "UPDATE knowledge_relationship SET strength = ?, metadata_json = ?, updated_at = ? WHERE id = ?",
                    (strength, json.dumps(metadata, sort_keys=True), now, row["id"]),
                )
                return row["id"]

            relationship_id = relationship.id or str(uuid.uuid4())
            self.db.execute(
                f"INSERT INTO knowledge_relationship ({RELATIONSHIP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    relationship_id,
                    relationship.source_entity_id,
                    relationship.target_entity_id,
                    relationship.type,
                    relationship.strength,
                    json.dumps(relationship.metadata, sort_keys=True),
                    now,
                    now,
                ),
            )
            return relationship_id

    def get_relationship(self, source_id: str, target_id: str, relationship_type: str) -> Optional[KnowledgeRelationship]:
        row = self.db.fetch_one(
            f"""
            SELECT {RELATIONSHIP_COLUMNS} FROM knowledge_relationship
            WHERE source_entity_id = ? AND target_entity_id = ? AND type = ?
            """,
            (source_id, target_id, relationship_type),
        )
        return _row_to_relationship(row) if row else None

    def count_relationships(self, relationship_type: Optional[str] = None) -> int:
        if relationship_type:
            row = self.db.fetch_one("SELECT COUNT(*) AS n FROM knowledge_relationship WHERE type = ?", (relationship_type,))
        else:
            row = self.db.fetch_one("SELECT COUNT(*) AS n FROM knowledge_relationship")
        return row["n"]

    def prune_dangling_relationships(self) -> int:
        """Delete edges whose source or target entity no longer exists"""
        cursor = self.db.execute(
            """
            DELETE FROM knowledge_relationship
            WHERE source_entity_id NOT IN (SELECT id FROM knowledge_entity)
               OR target_entity_id NOT IN (SELECT id FROM knowledge_entity)
            """
        )
        if cursor.rowcount:
            logger.info(f"Pruned {cursor.rowcount} dangling relationships")
        return cursor.rowcount

    def _neighbors(
        self,
        entity_id: str,
        relation_types: Optional[List[str]],
        direction: str,
    ) -> List[Tuple[KnowledgeRelationship, KnowledgeEntity]]:
        """Edges touching entity_id whose other endpoint still exists"""
        results = []
        sides = []
        if direction in ("out", "both"):
            sides.append(("source_entity_id", "target_entity_id"))
        if direction in ("in", "both"):
            sides.append(("target_entity_id", "source_entity_id"))

        rel_columns = ", ".join(f"r.{c} AS r_{c}" for c in RELATIONSHIP_COLUMNS.split(", "))
        ent_columns = ", ".join(f"e.{c}" for c in ENTITY_COLUMNS.split(", "))

        for own_side, other_side in sides:
            sql = (
                f"SELECT {rel_columns}, {ent_columns} FROM knowledge_relationship r "
                f"JOIN knowledge_entity e ON e.id = r.{other_side} "
                f"WHERE r.{own_side} = ?"
            )
            params: List[Any] = [entity_id]
            if relation_types:
                sql += f" AND r.type IN ({','.join('?' for _ in relation_types)})"
                params.extend(relation_types)
            sql += " ORDER BY r.strength DESC, r.id ASC"

            for row in self.db.fetch_all(sql, params):
                results.append((_row_to_relationship(row, prefix="r_"), _row_to_entity(row)))
        return results

    def get_relationships(
        self,
        entity_id: str,
        relation_types: Optional[List[str]] = None,
        direction: str = "both",
    ) -> List[Tuple[KnowledgeRelationship, KnowledgeEntity]]:
        """Live (non-dangling) edges of an entity with the entity at the other end"""
        return self._neighbors(entity_id, relation_types, direction)

    # Traversal
    def traverse(
        self,
        start_id: str,
        relation_types: Optional[List[str]] = None,
        max_depth: int = 2,
        direction: str = "out",
    ) -> List[GraphPath]:
        """All acyclic paths from start_id up to max_depth edges

        Edges whose far endpoint no longer exists are never followed.

        Args:
            start_id: Entity to start from
            relation_types: Only follow these edge types (None = all)
            max_depth: Maximum number of edges per path
            direction: 'out', 'in' or 'both'

        Returns:
            Paths ordered by depth, then by total strength descending
        """
        start = self.get_entity(start_id)
        if start is None or max_depth <= 0:
            return []

        paths: List[GraphPath] = []
        frontier = [GraphPath(entities=[start], relationships=[])]

        for _depth in range(max_depth):
            next_frontier = []
            for path in frontier:
                visited = {e.id for e in path.entities}
                for relationship, neighbor in self._neighbors(path.end.id, relation_types, direction):
                    if neighbor.id in visited:
                        continue
                    extended = GraphPath(
                        entities=path.entities + [neighbor],
                        relationships=path.relationships + [relationship],
                    )
                    paths.append(extended)
                    next_frontier.append(extended)
                    if len(paths) >= MAX_TRAVERSAL_PATHS:
                        logger.warning(f"Traversal from {start_id} truncated at {MAX_TRAVERSAL_PATHS} paths")
                        return paths
            frontier = next_frontier
            if not frontier:
                break

        paths.sort(key=lambda p: (p.depth, -p.total_strength))
        return paths

    # Similarity
    def similarity_search(
        self,
        embedding: List[float],
        k: int = 10,
        entity_types: Optional[List[str]] = None,
    ) -> List[KnowledgeEntity]:
        """Nearest entities by cosine distance, closest first, at most k"""
        return [entity for entity, _distance in self.similarity_search_with_scores(embedding, k, entity_types)]

    def similarity_search_with_scores(
        self,
        embedding: List[float],
        k: int = 10,
        entity_types: Optional[List[str]] = None,
    ) -> List[Tuple[KnowledgeEntity, float]]:
        if k <= 0:
            return []

        query = np.asarray(embedding, dtype=float)
        query_norm = np.linalg.norm(query)
        if query.ndim != 1 or query_norm == 0:
            raise ValueError("Query embedding must be a non-zero 1-D vector")

        sql = f"SELECT {ENTITY_COLUMNS} FROM knowledge_entity WHERE embedding_json IS NOT NULL"
        params: List[Any] = []
        if entity_types:
            sql += f" AND type IN ({','.join('?' for _ in entity_types)})"
            params.extend(entity_types)

        candidates = []
        vectors = []
        for row in self.db.fetch_all(sql, params):
            vector = json.loads(row["embedding_json"])
            if len(vector) != len(query):
                continue
            candidates.append(row)
            vectors.append(vector)

        if not candidates:
            return []

        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        valid = norms > 0
        similarities = np.zeros(len(candidates))
        similarities[valid] = (matrix[valid] @ query) / (norms[valid] * query_norm)
        distances = 1.0 - similarities

        order = sorted(
            (i for i in range(len(candidates)) if valid[i]),
            key=lambda i: (distances[i], candidates[i]["id"]),
        )
        return [(_row_to_entity(candidates[i]), float(distances[i])) for i in order[:k]]

    # Decision Records
    def save_decision(self, decision: DecisionRecord) -> str:
        """Upsert a decision entity and its record

        Re-deriving a decision keeps a superseded/deprecated status and
        accumulates provenance.
        """
        if decision.status not in DECISION_STATUSES:
            raise IntegrityError(f"Unsupported decision status '{decision.status}'")

        with self.db.transaction():
            entity_id = self.upsert_entity(KnowledgeEntity(
                type="decision",
                source_id=decision.source_id,
                name=decision.title,
                description=decision.description,
                metadata={"platform": decision.platform, "participants": decision.participants},
                embedding=self.embeddings.generate_embedding(f"{decision.title}\n\n{decision.description}"),
                created_at=decision.decided_at,
            ))

            existing = self.get_decision(entity_id)
            status = decision.status
            superseded_by = decision.superseded_by
            if existing:
                if existing.status != "active":
                    status, superseded_by = existing.status, existing.superseded_by
                decision = decision.model_copy(update={
                    "alternatives": merge_string_lists(existing.alternatives, decision.alternatives),
                    "consequences": merge_string_lists(existing.consequences, decision.consequences),
                    "participants": merge_string_lists(existing.participants, decision.participants),
                    "source_event_ids": merge_string_lists(existing.source_event_ids, decision.source_event_ids),
                    "rationale": decision.rationale or existing.rationale,
                    "decided_at": existing.decided_at or decision.decided_at,
                })

            self.db.execute(
                """
                INSERT OR REPLACE INTO decision_record
                  (entity_id, title, description, rationale, alternatives, consequences, status,
                   superseded_by, participants, source_event_ids, platform, decided_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_id,
                    decision.title,
                    decision.description,
                    decision.rationale,
                    encode_string_list(decision.alternatives),
                    encode_string_list(decision.consequences),
                    status,
                    superseded_by,
                    encode_string_list(decision.participants),
                    encode_string_list(decision.source_event_ids),
                    decision.platform,
                    to_db_time(decision.decided_at),
                ),
            )
        return entity_id

    def get_decision(self, entity_id: str) -> Optional[DecisionRecord]:
        row = self.db.fetch_one(
            """
            SELECT d.*, e.source_id FROM decision_record d
            JOIN knowledge_entity e ON e.id = d.entity_id
            WHERE d.entity_id = ?
            """,
            (entity_id,),
        )
        if not row:
            return None
        return DecisionRecord(
            entity_id=row["entity_id"],
            source_id=row["source_id"],
            title=row["title"],
            description=row["description"],
            rationale=row["rationale"],
            alternatives=decode_string_list(row["alternatives"]),
            consequences=decode_string_list(row["consequences"]),
            status=row["status"],
            superseded_by=row["superseded_by"],
            participants=decode_string_list(row["participants"]),
            source_event_ids=decode_string_list(row["source_event_ids"]),
            platform=row["platform"],
            decided_at=from_db_time(row["decided_at"]),
        )

    def set_decision_status(self, entity_id: str, status: str, superseded_by: Optional[str] = None) -> None:
        if status not in DECISION_STATUSES:
            raise IntegrityError(f"Unsupported decision status '{status}'")
        with self.db.transaction():
            cursor = self.db.execute(
                "UPDATE decision_record SET status = ?, superseded_by = ? WHERE entity_id = ?",
                (status, superseded_by, entity_id),
            )
            if cursor.rowcount != 1:
                raise IntegrityError(f"Decision {entity_id} does not exist")
            entity = self.get_entity(entity_id)
            self.db.execute(
                "UPDATE knowledge_entity SET metadata_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps({**entity.metadata, "status": status}, sort_keys=True), to_db_time(utc_now()), entity_id),
            )

    def supersede_decision(self, old_entity_id: str, new_entity_id: str) -> None:
        """Mark a decision superseded by a newer one and link them"""
        with self.db.transaction():
            if self.get_decision(new_entity_id) is None:
                raise IntegrityError(f"Decision {new_entity_id} does not exist")
            self.set_decision_status(old_entity_id, "superseded", superseded_by=new_entity_id)
            self.upsert_relationship(KnowledgeRelationship(
                source_entity_id=new_entity_id,
                target_entity_id=old_entity_id,
                type="relates_to",
                strength=1.0,
                metadata={"reason": "supersedes"},
            ))
        logger.info(f"Decision {old_entity_id} superseded by {new_entity_id}")

    # Discussion Summaries
    def save_discussion(self, discussion: DiscussionSummary) -> str:
        with self.db.transaction():
            entity_id = self.upsert_entity(KnowledgeEntity(
                type="discussion",
                source_id=discussion.source_id,
                name=(discussion.summary[:80] or discussion.source_id),
                description=discussion.summary,
                metadata={"platform": discussion.platform, "thread_id": discussion.thread_id},
                embedding=self.embeddings.generate_embedding(discussion.summary),
                created_at=discussion.started_at,
            ))

            existing = self.get_discussion(entity_id)
            if existing:
                discussion = discussion.model_copy(update={
                    "participants": merge_string_lists(existing.participants, discussion.participants),
                    "key_points": merge_string_lists(existing.key_points, discussion.key_points),
                    "action_items": merge_string_lists(existing.action_items, discussion.action_items),
                    "file_refs": merge_string_lists(existing.file_refs, discussion.file_refs),
                    "feature_refs": merge_string_lists(existing.feature_refs, discussion.feature_refs),
                    "source_event_ids": merge_string_lists(existing.source_event_ids, discussion.source_event_ids),
                    "summary": discussion.summary or existing.summary,
                    "started_at": min(t for t in (existing.started_at, discussion.started_at) if t) if (existing.started_at or discussion.started_at) else None,
                    "ended_at": max(t for t in (existing.ended_at, discussion.ended_at) if t) if (existing.ended_at or discussion.ended_at) else None,
                })

            self.db.execute(
                """
                INSERT OR REPLACE INTO discussion_summary
                  (entity_id, thread_id, platform, participants, summary, key_points, action_items,
                   file_refs, feature_refs, source_event_ids, started_at, ended_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_id,
                    discussion.thread_id,
                    discussion.platform,
                    encode_string_list(discussion.participants),
                    discussion.summary,
                    encode_string_list(discussion.key_points),
                    encode_string_list(discussion.action_items),
                    encode_string_list(discussion.file_refs),
                    encode_string_list(discussion.feature_refs),
                    encode_string_list(discussion.source_event_ids),
                    to_db_time(discussion.started_at),
                    to_db_time(discussion.ended_at),
                ),
            )
        return entity_id

    def get_discussion(self, entity_id: str) -> Optional[DiscussionSummary]:
        row = self.db.fetch_one(
            """
            SELECT s.*, e.source_id FROM discussion_summary s
            JOIN knowledge_entity e ON e.id = s.entity_id
            WHERE s.entity_id = ?
            """,
            (entity_id,),
        )
        if not row:
            return None
        return DiscussionSummary(
            entity_id=row["entity_id"],
            source_id=row["source_id"],
            thread_id=row["thread_id"],
            platform=row["platform"],
            participants=decode_string_list(row["participants"]),
            summary=row["summary"],
            key_points=decode_string_list(row["key_points"]),
            action_items=decode_string_list(row["action_items"]),
            file_refs=decode_string_list(row["file_refs"]),
            feature_refs=decode_string_list(row["feature_refs"]),
            source_event_ids=decode_string_list(row["source_event_ids"]),
            started_at=from_db_time(row["started_at"]),
            ended_at=from_db_time(row["ended_at"]),
        )

    # Feature Contexts
    def save_feature(self, feature: FeatureContext) -> str:
        with self.db.transaction():
            entity_id = self.upsert_entity(KnowledgeEntity(
                type="feature",
                source_id=feature.source_id,
                name=feature.name,
                description=feature.description,
                metadata={"status": feature.status},
                embedding=self.embeddings.generate_embedding(f"{feature.name}\n\n{feature.description}"),
            ))

            existing = self.get_feature(entity_id)
            if existing:
                feature = feature.model_copy(update={
                    "files": merge_string_lists(existing.files, feature.files),
                    "contributors": merge_string_lists(existing.contributors, feature.contributors),
                    "source_event_ids": merge_string_lists(existing.source_event_ids, feature.source_event_ids),
                    "description": feature.description or existing.description,
                })

            self.db.execute(
                """
                INSERT OR REPLACE INTO feature_context
                  (entity_id, name, description, status, files, contributors, source_event_ids)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_id,
                    feature.name,
                    feature.description,
                    feature.status,
                    encode_string_list(feature.files),
                    encode_string_list(feature.contributors),
                    encode_string_list(feature.source_event_ids),
                ),
            )
        return entity_id

    def get_feature(self, entity_id: str) -> Optional[FeatureContext]:
        row = self.db.fetch_one(
            """
            SELECT f.*, e.source_id FROM feature_context f
            JOIN knowledge_entity e ON e.id = f.entity_id
            WHERE f.entity_id = ?
            """,
            (entity_id,),
        )
        if not row:
            return None
        return FeatureContext(
            entity_id=row["entity_id"],
            source_id=row["source_id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            files=decode_string_list(row["files"]),
            contributors=decode_string_list(row["contributors"]),
            source_event_ids=decode_string_list(row["source_event_ids"]),
        )

    # File Context History
    def save_file_history(self, history: FileContextHistory) -> str:
        with self.db.transaction():
            entity_id = self.upsert_entity(KnowledgeEntity(
                type="file",
                source_id=history.path,
                name=history.path.rsplit("/", 1)[-1],
                description="; ".join(history.change_reasons[-3:]),
                metadata={"path": history.path},
            ))

            existing = self.get_file_history_by_id(entity_id)
            if existing:
                last_modified = max(t for t in (existing.last_modified, history.last_modified) if t) \
                    if (existing.last_modified or history.last_modified) else None
                history = history.model_copy(update={
                    "change_reasons": merge_string_lists(existing.change_reasons, history.change_reasons),
                    "contributors": merge_string_lists(existing.contributors, history.contributors),
                    "related_decisions": merge_string_lists(existing.related_decisions, history.related_decisions),
                    "source_event_ids": merge_string_lists(existing.source_event_ids, history.source_event_ids),
                    "last_modified": last_modified,
                })

            self.db.execute(
                """
                INSERT OR REPLACE INTO file_context_history
                  (entity_id, path, change_reasons, contributors, related_decisions, source_event_ids, last_modified)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_id,
                    history.path,
                    encode_string_list(history.change_reasons),
                    encode_string_list(history.contributors),
                    encode_string_list(history.related_decisions),
                    encode_string_list(history.source_event_ids),
                    to_db_time(history.last_modified),
                ),
            )
        return entity_id

    def get_file_history_by_id(self, entity_id: str) -> Optional[FileContextHistory]:
        row = self.db.fetch_one("SELECT * FROM file_context_history WHERE entity_id = ?", (entity_id,))
        if not row:
            return None
        return FileContextHistory(
            entity_id=row["entity_id"],
            path=row["path"],
            change_reasons=decode_string_list(row["change_reasons"]),
            contributors=decode_string_list(row["contributors"]),
            related_decisions=decode_string_list(row["related_decisions"]),
            source_event_ids=decode_string_list(row["source_event_ids"]),
            last_modified=from_db_time(row["last_modified"]),
        )

    def get_file_history(self, path: str) -> Optional[FileContextHistory]:
        entity_id = self.entity_id_for("file", path)
        return self.get_file_history_by_id(entity_id) if entity_id else None

    # Context Queries
    def get_file_context(self, path: str) -> Dict[str, Any]:
        """Everything known about a file: history, linked decisions, related entities"""
        file_entity = self.find_entity("file", path)
        if file_entity is None:
            return {"file_path": path, "history": None, "related_decisions": [], "related_entities": []}

        related = self.get_relationships(file_entity.id, direction="both")
        decisions = []
        entities = []
        for relationship, entity in related:
            if entity.type == "decision":
                record = self.get_decision(entity.id)
                if record:
                    decisions.append(record)
            else:
                entities.append({"entity": entity, "relationship": relationship.type, "strength": relationship.strength})

        decisions.sort(key=lambda d: d.decided_at.timestamp() if d.decided_at else 0, reverse=True)
        return {
            "file_path": path,
            "history": self.get_file_history_by_id(file_entity.id),
            "related_decisions": decisions,
            "related_entities": entities,
        }

    def get_decision_history(self, target: str, limit: int = 50) -> List[DecisionRecord]:
        """Decisions linked to a file/feature, or mentioning the target, newest first"""
        decision_ids: List[str] = []

        for entity_type in ("file", "feature"):
            entity = self.find_entity(entity_type, target)
            if entity:
                for _relationship, neighbor in self.get_relationships(entity.id, direction="both"):
                    if neighbor.type == "decision" and neighbor.id not in decision_ids:
                        decision_ids.append(neighbor.id)

        for entity in self.search_entities(target, entity_types=["decision"], limit=limit):
            if entity.id not in decision_ids:
                decision_ids.append(entity.id)

        decisions = [d for d in (self.get_decision(i) for i in decision_ids) if d]
        decisions.sort(key=lambda d: d.decided_at.timestamp() if d.decided_at else 0, reverse=True)
        return decisions[:limit]
