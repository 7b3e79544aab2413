"""Tests for HeuristicExtractor"""
import pytest
from processors.heuristic_extractor import HeuristicExtractor, discussion_source_id
from processors.event_grouper import EventGrouper
from models.extraction import EventGroup
from tests.fixtures.ingestion_fixtures import normalized_event, at


@pytest.fixture
def extractor():
    return HeuristicExtractor()


def group_of(*events, key="file:src/cache.py", kind="file"):
    return EventGroup(key=key, kind=kind, events=list(events))


def test_extract_decision_with_rationale_and_alternatives(extractor):
    """Decision keywords produce a decision record with provenance"""
    event = normalized_event(
        1,
        title="Use Redis for caching",
        content="We decided to use Redis because it is fast.\nAlternatives: Memcached\nImpact: new infra",
        files=["src/cache.py"],
    )

    decisions = extractor.extract_decisions(group_of(event))

    assert len(decisions) == 1
    decision = decisions[0]
    assert decision.source_id == "github:pull_request-1"
    assert decision.title == "Use Redis for caching"
    assert decision.rationale == "because it is fast"
    assert decision.alternatives == ["Memcached"]
    assert decision.consequences == ["new infra"]
    assert decision.source_event_ids == ["github:pull_request-1"]
    assert decision.decided_at == at(1)


def test_no_decision_without_keywords(extractor):
    event = normalized_event(1, content="Bumped a dependency version")

    assert extractor.extract_decisions(group_of(event)) == []


def test_summary_for_thread(extractor):
    """Chat threads get a summary keyed by platform and thread"""
    events = [
        normalized_event(1, event_type="message", platform="slack", thread_id="C1-1", author="alice",
                         content="Should we cache sessions? It is slow today."),
        normalized_event(2, event_type="message", platform="slack", thread_id="C1-1", author="bob",
                         content="- use Redis\n- expire after 1h\nWe need to update the docs."),
    ]
    group = EventGrouper().group(events)[0]

    summary = extractor.summarize(group)

    assert summary.source_id == "slack:C1-1"
    assert summary.participants == ["alice", "bob"]
    assert summary.summary.startswith("Should we cache sessions?")
    assert summary.key_points == ["use Redis", "expire after 1h"]
    assert any("need to update the docs" in item for item in summary.action_items)
    assert summary.started_at == at(1)
    assert summary.ended_at == at(2)


def test_no_summary_for_commits_only(extractor):
    group = group_of(normalized_event(1, event_type="commit", files=["src/cache.py"]))

    assert extractor.summarize(group) is None


def test_discussion_source_id_falls_back_to_group_key():
    group = group_of(normalized_event(1, files=["src/cache.py"]))

    assert discussion_source_id(group) == "file:src/cache.py"


def test_features_from_refs_and_text(extractor):
    events = [
        normalized_event(1, content="Working on search ranking", features=["search"], files=["src/search.py"],
                         author="alice"),
        normalized_event(2, content="Feature: dark mode is done", author="bob"),
    ]

    features = {f.source_id: f for f in extractor.build_features(group_of(*events))}

    assert set(features) == {"search", "dark-mode-is-done"}
    assert features["search"].files == ["src/search.py"]
    assert features["search"].status == "in_progress"
    assert features["search"].contributors == ["alice"]
    assert features["dark-mode-is-done"].status == "completed"


def test_feature_status_inference(extractor):
    assert extractor.infer_feature_status("This shipped yesterday") == "completed"
    assert extractor.infer_feature_status("Planned for next sprint") == "planned"
    assert extractor.infer_feature_status("We dropped it") == "cancelled"
    assert extractor.infer_feature_status("Nothing to say") == "in_progress"


def test_file_histories_link_decisions(extractor):
    event = normalized_event(1, title="Refactor cache", content="We decided to fix stale reads in the cache",
                             files=["src/cache.py", "src/store.py"], author="alice")

    result = extractor.extract(group_of(event))

    paths = [h.path for h in result.files]
    assert paths == ["src/cache.py", "src/store.py"]
    history = result.files[0]
    assert history.change_reasons == ["stale reads in the cache"]
    assert history.related_decisions == ["github:pull_request-1"]
    assert history.contributors == ["alice"]
    assert history.last_modified == at(1)


def test_change_reason_falls_back_to_title(extractor):
    event = normalized_event(1, title="Tidy imports", content="Tidy imports. Nothing else.")

    assert extractor.change_reason(event) == "Tidy imports"


def test_extract_is_deterministic(extractor):
    event = normalized_event(1, content="We decided to add caching because reads are slow", files=["src/cache.py"])

    assert extractor.extract(group_of(event)) == extractor.extract(group_of(event))


def test_empty_group(extractor):
    result = extractor.extract(EventGroup(key="event:x", kind="single", events=[]))

    assert result.decisions == []
    assert result.discussion is None
