"""Tests for ContextProcessor - grouping, per-group containment, idempotence"""
import threading
import pytest
from services.database import DatabaseService
from services.knowledge_graph import KnowledgeGraphStore
from processors.context_processor import ContextProcessor
from processors.event_grouper import EventGrouper
from processors.heuristic_extractor import Extractor, HeuristicExtractor
from models.extraction import EventGroup, ExtractionResult, EntityRef, RelationshipCandidate
from tests.fixtures.ingestion_fixtures import (
    FailingExtractor,
    decision_group_events,
    normalized_event,
)


@pytest.fixture
def store():
    db = DatabaseService(":memory:")
    yield KnowledgeGraphStore(db)
    db.close()


class DanglingEdgeExtractor(Extractor):
    """Adds an edge to a feature that is never created for marked groups"""

    def __init__(self, marker: str):
        self.marker = marker
        self.delegate = HeuristicExtractor()

    def extract(self, group: EventGroup) -> ExtractionResult:
        result = self.delegate.extract(group)
        if self.marker in group.key and result.decisions:
            result.relationships.append(RelationshipCandidate(
                source=EntityRef(type="decision", source_id=result.decisions[0].source_id),
                target=EntityRef(type="feature", source_id="never-created"),
                type="introduced_by",
                strength=0.5,
            ))
        return result


class BlockingExtractor(Extractor):
    """Hangs on marked groups until released"""

    def __init__(self, marker: str):
        self.marker = marker
        self.release = threading.Event()
        self.delegate = HeuristicExtractor()

    def extract(self, group: EventGroup) -> ExtractionResult:
        if self.marker in group.key:
            self.release.wait(5)
        return self.delegate.extract(group)


class ExplodingExtractor(Extractor):
    def extract(self, group: EventGroup) -> ExtractionResult:
        raise RuntimeError("unexpected bug")


class TestEventGrouper:
    def test_thread_then_file_then_feature_then_single(self):
        events = [
            normalized_event(1, event_type="message", platform="slack", thread_id="C1-1", files=["src/a.py"]),
            normalized_event(2, event_type="message", platform="slack", thread_id="C1-1"),
            normalized_event(3, files=["src/a.py", "src/b.py"]),
            normalized_event(4, features=["search"]),
            normalized_event(5),
        ]

        groups = EventGrouper().group(events)

        assert [(g.key, g.kind, len(g.events)) for g in groups] == [
            ("thread:slack:C1-1", "thread", 2),
            ("file:src/a.py", "file", 1),
            ("feature:search", "feature", 1),
            ("event:github:pull_request-5", "single", 1),
        ]

    def test_groups_are_ordered_by_time(self):
        events = [normalized_event(2, files=["b.py"]), normalized_event(1, files=["a.py"])]

        assert [g.key for g in EventGrouper().group(events)] == ["file:a.py", "file:b.py"]


class TestContextProcessor:
    def test_batch_resilience_one_failing_group(self, store):
        """Ten groups with group five failing: nine persisted, one error"""
        extractor = FailingExtractor(["src/module_5.py"])
        processor = ContextProcessor(store, extractor=extractor)

        result = processor.process(decision_group_events(10))

        assert result.groups_total == 10
        assert result.groups_persisted == 9
        assert len(result.errors) == 1
        assert result.errors[0].error_type == "extraction_error"
        assert result.failed_event_ids == ["github:pull_request-5"]
        assert "github:pull_request-5" not in result.persisted_event_ids
        assert store.count_entities("decision") == 9
        assert store.get_file_history("src/module_5.py") is None
        assert len(extractor.calls) == 10

    def test_persists_decision_discussion_file_and_contributor(self, store):
        result = ContextProcessor(store).process(decision_group_events(1))

        assert result.groups_persisted == 1
        decision = store.find_entity("decision", "github:pull_request-1")
        file_entity = store.find_entity("file", "src/module_1.py")
        contributor = store.find_entity("contributor", "github:alice")
        assert decision and file_entity and contributor
        assert store.count_entities("discussion") == 1

        edge = store.get_relationship(decision.id, file_entity.id, "relates_to")
        assert edge.strength >= 0.3
        assert edge.metadata["group"] == "file:src/module_1.py"
        assert store.get_relationship(file_entity.id, contributor.id, "modified_by").strength == 0.7

    def test_reprocessing_is_idempotent(self, store):
        processor = ContextProcessor(store)
        events = decision_group_events(3)

        processor.process(events)
        counts = (store.count_entities(), store.count_relationships())
        processor.process(events)

        assert (store.count_entities(), store.count_relationships()) == counts

    def test_integrity_error_rolls_back_only_that_group(self, store):
        processor = ContextProcessor(store, extractor=DanglingEdgeExtractor("src/module_2.py"))

        result = processor.process(decision_group_events(3))

        assert result.groups_persisted == 2
        assert result.errors[0].error_type == "integrity_error"
        assert store.find_entity("decision", "github:pull_request-2") is None
        assert store.find_entity("decision", "github:pull_request-3") is not None

    def test_timeout_is_contained(self, store):
        extractor = BlockingExtractor("src/module_1.py")
        processor = ContextProcessor(store, extractor=extractor, timeout_seconds=0.2)

        try:
            result = processor.process(decision_group_events(3))
        finally:
            extractor.release.set()

        assert [e.error_type for e in result.errors] == ["timeout"]
        assert result.groups_persisted == 2
        assert store.find_entity("decision", "github:pull_request-1") is None

    def test_unexpected_error_recorded(self, store):
        result = ContextProcessor(store, extractor=ExplodingExtractor()).process(decision_group_events(2))

        assert result.groups_persisted == 0
        assert {e.error_type for e in result.errors} == {"processing_error"}

    def test_cancel_stops_before_next_group(self, store):
        cancel = threading.Event()
        cancel.set()

        result = ContextProcessor(store).process(decision_group_events(2), cancel_event=cancel)

        assert result.cancelled
        assert result.groups_persisted == 0

    def test_heartbeat_runs_before_each_group(self, store):
        cancel = threading.Event()
        beats = []

        def heartbeat():
            beats.append(len(beats))
            if len(beats) == 3:
                cancel.set()

        result = ContextProcessor(store).process(decision_group_events(4), cancel_event=cancel, heartbeat=heartbeat)

        assert beats == [0, 1, 2]
        assert result.cancelled
        assert result.groups_persisted == 2

    def test_empty_batch(self, store):
        result = ContextProcessor(store).process([])

        assert result.groups_total == 0
        assert not result.has_failures
