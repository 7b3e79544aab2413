"""Tests for RelationshipMapper"""
import pytest
from processors.relationship_mapper import (
    RelationshipMapper,
    contributor_ref,
    CO_REFERENCE_STRENGTH,
    DISCUSSED_IN_STRENGTH,
)
from processors.heuristic_extractor import HeuristicExtractor
from models.extraction import EventGroup, ExtractionResult, EntityRef, RelationshipCandidate
from models.decision_record import DecisionRecord
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory
from tests.fixtures.ingestion_fixtures import normalized_event, at


@pytest.fixture
def mapper():
    return RelationshipMapper()


def edges_by_type(candidates):
    result = {}
    for c in candidates:
        result.setdefault(c.type, []).append(c)
    return result


def test_map_decision_group(mapper):
    """A decision PR links to its discussion, file and author"""
    event = normalized_event(1, title="Refactor cache", content="We decided to fix stale reads in src/cache.py",
                             files=["src/cache.py"], author="alice")
    group = EventGroup(key="file:src/cache.py", kind="file", events=[event])
    result = HeuristicExtractor().extract(group)

    candidates = mapper.map(result, group)

    decision = EntityRef(type="decision", source_id="github:pull_request-1")
    file_ref = EntityRef(type="file", source_id="src/cache.py")
    keys = {(c.source, c.target, c.type): c.strength for c in candidates}
    assert keys[(decision, EntityRef(type="discussion", source_id="file:src/cache.py"), "discussed_in")] == DISCUSSED_IN_STRENGTH
    assert keys[(decision, file_ref, "relates_to")] >= 0.7
    assert keys[(decision, contributor_ref("github", "alice"), "introduced_by")] == 0.6
    assert keys[(file_ref, contributor_ref("github", "alice"), "modified_by")] == 0.7


def test_decision_file_strength_from_path_mention(mapper):
    event = normalized_event(1, files=["src/cache.py"])
    group = EventGroup(key="g", kind="file", events=[event])
    decision = DecisionRecord(source_id="github:x", title="Split src/cache.py", source_event_ids=["github:other"])
    history = FileContextHistory(path="src/cache.py")

    # Path mention (0.5) plus extension mention (0.2)
    assert mapper.decision_file_strength(decision, history, group) == pytest.approx(0.7)


def test_decision_file_strength_floor_for_own_event(mapper):
    """A file touched by the decision's own event is never below the floor"""
    event = normalized_event(1, files=["src/cache.py"])
    group = EventGroup(key="g", kind="file", events=[event])
    decision = DecisionRecord(source_id="github:x", title="Unrelated words", source_event_ids=[event.event_key])

    strength = mapper.decision_file_strength(decision, FileContextHistory(path="src/cache.py"), group)

    assert strength == CO_REFERENCE_STRENGTH


def test_decision_file_strength_capped(mapper):
    group = EventGroup(key="g", kind="file", events=[normalized_event(1)])
    decision = DecisionRecord(
        source_id="github:x",
        title="src/cache.py cache eviction policy redis timeout memory pressure",
    )
    history = FileContextHistory(
        path="src/cache.py",
        change_reasons=["cache eviction policy redis timeout memory pressure"],
    )

    assert mapper.decision_file_strength(decision, history, group) == 1.0


def test_decision_feature_strength(mapper):
    event = normalized_event(1, author="alice")
    group = EventGroup(key="g", kind="feature", events=[event])
    decision = DecisionRecord(source_id="github:x", title="Ship the dark mode toggle", participants=["alice"],
                              decided_at=at(2))
    feature = FeatureContext(source_id="dark-mode", name="Dark Mode", contributors=["alice"],
                             source_event_ids=[event.event_key])

    # Mention (0.6) + shared participant (0.2) + within a week (0.2)
    assert mapper.decision_feature_strength(decision, feature, group) == 1.0


def test_unrelated_feature_gets_no_edge(mapper):
    group = EventGroup(key="g", kind="feature", events=[normalized_event(1)])
    decision = DecisionRecord(source_id="github:x", title="Bump version", participants=["bob"])
    feature = FeatureContext(source_id="billing", name="Billing", contributors=["alice"])

    assert mapper.decision_feature_strength(decision, feature, group) == 0.0


def test_feature_file_edges_only_for_extracted_files(mapper):
    event = normalized_event(1, files=["src/search.py"], features=["search"])
    group = EventGroup(key="g", kind="file", events=[event])
    result = ExtractionResult(
        features=[FeatureContext(source_id="search", name="search", files=["src/search.py", "src/gone.py"])],
        files=[FileContextHistory(path="src/search.py")],
    )

    edges = edges_by_type(mapper.map(result, group))["modified_by"]

    assert [(e.source.source_id, e.target.source_id) for e in edges] == [("search", "src/search.py")]
    assert edges[0].strength == 0.9


def test_dedupe_keeps_strongest_and_drops_self_loops(mapper):
    a = EntityRef(type="decision", source_id="a")
    b = EntityRef(type="file", source_id="b")
    candidates = [
        RelationshipCandidate(source=a, target=b, type="relates_to", strength=0.3),
        RelationshipCandidate(source=a, target=b, type="relates_to", strength=0.8),
        RelationshipCandidate(source=a, target=b, type="relates_to", strength=0.5),
        RelationshipCandidate(source=a, target=a, type="relates_to", strength=1.0),
    ]

    deduped = mapper.dedupe(candidates)

    assert len(deduped) == 1
    assert deduped[0].strength == 0.8


def test_empty_group(mapper):
    assert mapper.map(ExtractionResult(), EventGroup(key="g", kind="single", events=[])) == []
