from services.database import DatabaseService
from services.knowledge_graph import KnowledgeGraphStore
from models.platform_event import NormalizedEvent
from models.knowledge_entity import KnowledgeEntity
from config import settings
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

# Multiplier on the base limit for each category returned
CATEGORY_MULTIPLIERS = {
    "pull_requests": 1,
    "issues": 1,
    "commits": 2,
    "decisions": 1,
    "discussions": 1,
}

EVENT_CATEGORIES = {
    "pull_request": "pull_requests",
    "issue": "issues",
    "commit": "commits",
}

ENTITY_CATEGORIES = {
    "decision": "decisions",
    "discussion": "discussions",
}

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class ContextQueryFilter:
    """
    Bounds the context handed to a downstream model

    Whatever the size of the repository, a context payload holds at most
    `limit` pull requests, issues, decisions and discussions and `2 * limit`
    commits, newest first.
    """

    def __init__(
        self,
        limit: Optional[int] = None,
        db: Optional[DatabaseService] = None,
        store: Optional[KnowledgeGraphStore] = None,
    ):
        self.limit = limit if limit is not None else settings.CONTEXT_QUERY_LIMIT
        if self.limit < 0:
            raise ValueError("limit must be >= 0")
        self.db = db
        self.store = store

    def cap_for(self, category: str) -> int:
        return self.limit * CATEGORY_MULTIPLIERS[category]

    def filter(self, items: Iterable[NormalizedEvent]) -> Dict[str, List[NormalizedEvent]]:
        """Bucket events into pull_requests / issues / commits, newest first, capped"""
        buckets: Dict[str, List[NormalizedEvent]] = {c: [] for c in EVENT_CATEGORIES.values()}
        seen = set()
        for event in items:
            category = EVENT_CATEGORIES.get(event.event_type)
            if category is None or event.event_key in seen:
                continue
            seen.add(event.event_key)
            buckets[category].append(event)

        for category, events in buckets.items():
            events.sort(key=lambda e: e.timestamp, reverse=True)
            buckets[category] = events[:self.cap_for(category)]
        return buckets

    def filter_entities(self, entities: Iterable[KnowledgeEntity]) -> Dict[str, List[KnowledgeEntity]]:
        """Bucket decision and discussion entities, most recently updated first, capped"""
        buckets: Dict[str, List[KnowledgeEntity]] = {c: [] for c in ENTITY_CATEGORIES.values()}
        seen = set()
        for entity in entities:
            category = ENTITY_CATEGORIES.get(entity.type)
            if category is None or entity.id in seen:
                continue
            seen.add(entity.id)
            buckets[category].append(entity)

        for category, items in buckets.items():
            items.sort(key=lambda e: e.updated_at or _EPOCH, reverse=True)
            buckets[category] = items[:self.cap_for(category)]
        return buckets

    def build_context(self, targets: List[str]) -> Dict[str, Any]:
        """
        Collect bounded context for a set of files / features

        Args:
            targets: File paths or feature slugs

        Returns:
            {targets, pull_requests, issues, commits, decisions, discussions, totals}
            where totals holds each category's pre-cap count within the
            scanned window (at most scan_limit events per target), not an
            all-time count
        """
        if self.db is None or self.store is None:
            raise ValueError("build_context needs a database and a knowledge graph store")

        # Scan a bounded window per target; the caps below are what bound the payload
        scan_limit = max(self.limit * 10, 50)

        events: List[NormalizedEvent] = []
        entities: List[KnowledgeEntity] = []
        for target in targets:
            for event in self.db.find_events_referencing(target, limit=scan_limit):
                if target in event.file_refs or target in event.feature_refs:
                    events.append(event)

            for entity_type in ("file", "feature"):
                anchor = self.store.find_entity(entity_type, target)
                if anchor is None:
                    continue
                for _relationship, neighbor in self.store.get_relationships(anchor.id, direction="both"):
                    entities.append(neighbor)
                    # Discussions hang off decisions, one hop further
                    if neighbor.type == "decision":
                        for _r, second in self.store.get_relationships(neighbor.id, ["discussed_in"], direction="out"):
                            entities.append(second)

        event_buckets = self.filter(events)
        entity_buckets = self.filter_entities(entities)

        totals = {c: 0 for c in CATEGORY_MULTIPLIERS}
        for event in {e.event_key: e for e in events}.values():
            if event.event_type in EVENT_CATEGORIES:
                totals[EVENT_CATEGORIES[event.event_type]] += 1
        for entity in {e.id: e for e in entities}.values():
            if entity.type in ENTITY_CATEGORIES:
                totals[ENTITY_CATEGORIES[entity.type]] += 1

        context = {"targets": list(targets), **event_buckets, **entity_buckets, "totals": totals}
        logger.debug(
            f"Context for {targets}: "
            + ", ".join(f"{c}={len(context[c])}/{totals[c]}" for c in CATEGORY_MULTIPLIERS)
        )
        return context
