from typing import Callable, List, Dict, Optional
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from models.platform_event import NormalizedEvent
from models.extraction import EventGroup, ExtractionResult, EntityRef, RelationshipCandidate, GroupError, ProcessingResult
from models.knowledge_entity import KnowledgeEntity
from models.knowledge_relationship import KnowledgeRelationship
from processors.event_grouper import EventGrouper
from processors.heuristic_extractor import Extractor, HeuristicExtractor
from processors.relationship_mapper import RelationshipMapper
from services.knowledge_graph import KnowledgeGraphStore
from errors import ExtractionError, IntegrityError
from config import settings
import threading
import logging

logger = logging.getLogger(__name__)


class ContextProcessor:
    """
    Turns normalized events into knowledge graph artifacts

    Events are grouped, each group is extracted under a timeout and then
    persisted in its own transaction. A failing group is recorded and
    skipped; it never aborts the rest of the batch.
    """

    def __init__(
        self,
        store: KnowledgeGraphStore,
        extractor: Optional[Extractor] = None,
        mapper: Optional[RelationshipMapper] = None,
        grouper: Optional[EventGrouper] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.extractor = extractor or HeuristicExtractor()
        self.mapper = mapper or RelationshipMapper()
        self.grouper = grouper or EventGrouper()
        self.timeout_seconds = timeout_seconds or settings.EXTRACTION_TIMEOUT_SECONDS

    def process(
        self,
        events: List[NormalizedEvent],
        cancel_event: Optional[threading.Event] = None,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> ProcessingResult:
        """
        Process a batch of events

        Args:
            events: Normalized events (any order)
            cancel_event: Stops before the next group when set
            heartbeat: Called before each group, e.g. to renew the job lease

        Returns:
            ProcessingResult with persisted / failed event ids and group errors
        """
        groups = self.grouper.group(events)
        result = ProcessingResult(groups_total=len(groups))
        if not groups:
            return result

        logger.info(f"Processing {len(events)} events in {len(groups)} groups")
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extraction")
        try:
            for index, group in enumerate(groups):
                if heartbeat is not None:
                    heartbeat()
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Processing cancelled after {index} of {len(groups)} groups")
                    result.cancelled = True
                    break

                try:
                    extraction = self._extract(group, executor)
                    candidates = self.mapper.map(extraction, group)
                    with self.store.transaction():
                        entities, relationships = self._persist(group, extraction, candidates)
                except FuturesTimeout:
                    self._record_failure(result, group, "timeout", f"extraction exceeded {self.timeout_seconds}s")
                    # The stuck call still owns the worker thread
                    executor.shutdown(wait=False)
                    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extraction")
                except ExtractionError as e:
                    self._record_failure(result, group, "extraction_error", str(e))
                except IntegrityError as e:
                    self._record_failure(result, group, "integrity_error", str(e))
                except Exception as e:
                    logger.error(f"Unexpected error processing group {group.key}: {e}", exc_info=True)
                    self._record_failure(result, group, "processing_error", str(e))
                else:
                    result.groups_persisted += 1
                    result.entities_upserted += entities
                    result.relationships_upserted += relationships
                    result.persisted_event_ids.extend(group.event_ids)
        finally:
            executor.shutdown(wait=False)

        logger.info(
            f"Processed {result.groups_persisted}/{result.groups_total} groups "
            f"({result.entities_upserted} entities, {result.relationships_upserted} relationships, "
            f"{len(result.errors)} errors)"
        )
        return result

    def _extract(self, group: EventGroup, executor: ThreadPoolExecutor) -> ExtractionResult:
        future = executor.submit(self.extractor.extract, group)
        return future.result(timeout=self.timeout_seconds)

    def _persist(self, group: EventGroup, extraction: ExtractionResult, candidates: List[RelationshipCandidate]):
        """Write one group's artifacts; caller holds the transaction"""
        ids: Dict[EntityRef, str] = {}

        for decision in extraction.decisions:
            ids[EntityRef(type="decision", source_id=decision.source_id)] = self.store.save_decision(decision)
        if extraction.discussion:
            ids[EntityRef(type="discussion", source_id=extraction.discussion.source_id)] = \
                self.store.save_discussion(extraction.discussion)
        for feature in extraction.features:
            ids[EntityRef(type="feature", source_id=feature.source_id)] = self.store.save_feature(feature)
        for history in extraction.files:
            ids[EntityRef(type="file", source_id=history.path)] = self.store.save_file_history(history)

        for candidate in candidates:
            self.store.upsert_relationship(KnowledgeRelationship(
                source_entity_id=self._resolve(candidate.source, ids),
                target_entity_id=self._resolve(candidate.target, ids),
                type=candidate.type,
                strength=candidate.strength,
                metadata={**candidate.metadata, "group": group.key},
            ))

        return len(ids), len(candidates)

    def _resolve(self, ref: EntityRef, ids: Dict[EntityRef, str]) -> str:
        if ref in ids:
            return ids[ref]

        if ref.type == "contributor":
            platform, _, author = ref.source_id.partition(":")
            ids[ref] = self.store.upsert_entity(KnowledgeEntity(
                type="contributor",
                source_id=ref.source_id,
                name=author,
                metadata={"platform": platform},
            ))
            return ids[ref]

        entity_id = self.store.entity_id_for(ref.type, ref.source_id)
        if entity_id is None:
            raise IntegrityError(f"Relationship endpoint {ref.type}:{ref.source_id} does not exist")
        ids[ref] = entity_id
        return entity_id

    def _record_failure(self, result: ProcessingResult, group: EventGroup, error_type: str, message: str):
        logger.warning(f"Group {group.key} failed ({error_type}): {message}")
        result.errors.append(GroupError(
            group_key=group.key,
            error_type=error_type,
            message=message,
            event_ids=group.event_ids,
        ))
        result.failed_event_ids.extend(group.event_ids)
