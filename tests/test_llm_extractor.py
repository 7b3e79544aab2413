"""Tests for LLMExtractor with a mocked Anthropic client"""
import json
import pytest
from unittest.mock import Mock
from processors.llm_extractor import LLMExtractor
from models.extraction import EventGroup
from errors import ExtractionError
from tests.fixtures.ingestion_fixtures import normalized_event, at


def claude_reply(text: str) -> Mock:
    """Mock Anthropic client whose messages.create returns text"""
    client = Mock()
    client.messages.create.return_value = Mock(content=[Mock(text=text)])
    return client


def passthrough_chunker() -> Mock:
    chunker = Mock()
    chunker.truncate.side_effect = lambda text, max_tokens: text
    return chunker


@pytest.fixture
def group():
    events = [
        normalized_event(1, title="Use Redis", content="We decided to use Redis", files=["src/cache.py"],
                         author="alice"),
        normalized_event(2, event_type="issue", content="Sessions are slow", author="bob"),
    ]
    return EventGroup(key="file:src/cache.py", kind="file", events=events)


PAYLOAD = {
    "decisions": [
        {
            "title": "Use Redis for sessions",
            "description": "Sessions move to Redis",
            "rationale": "It is fast",
            "alternatives": ["Memcached"],
            "consequences": ["New infra"],
            "source_event_id": "github:pull_request-1",
        },
        {"description": "no title, skipped"},
    ],
    "summary": {"text": "The team moved sessions to Redis.", "key_points": ["Redis"], "action_items": ["Deploy"]},
    "features": [
        {"name": "Session Store", "status": "shipping", "files": ["src/cache.py"]},
        {"name": ""},
    ],
    "files": [
        {"path": "src/cache.py", "change_reason": "Moved sessions to Redis"},
        {"path": "src/invented.py", "change_reason": "Not in any event"},
    ],
}


def test_extract_maps_payload(group):
    """Model JSON becomes typed records tied to the group's events"""
    client = claude_reply(json.dumps(PAYLOAD))
    extractor = LLMExtractor(client=client, model="test-model", chunker=passthrough_chunker())

    result = extractor.extract(group)

    assert len(result.decisions) == 1
    decision = result.decisions[0]
    assert decision.source_id == "github:pull_request-1"
    assert decision.alternatives == ["Memcached"]
    assert decision.participants == ["alice", "bob"]
    assert decision.decided_at == at(1)

    assert result.discussion.source_id == "file:src/cache.py"
    assert result.discussion.action_items == ["Deploy"]
    assert result.discussion.ended_at == at(2)

    assert [f.source_id for f in result.features] == ["session-store"]
    assert result.features[0].status == "in_progress"

    assert [h.path for h in result.files] == ["src/cache.py"]
    assert result.files[0].change_reasons == ["Moved sessions to Redis"]
    assert result.files[0].related_decisions == ["github:pull_request-1"]

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    prompt = kwargs["messages"][0]["content"]
    assert "github:pull_request-1" in prompt
    assert "We decided to use Redis" in prompt


def test_fenced_json_is_accepted(group):
    client = claude_reply("```json\n" + json.dumps({"decisions": [], "files": []}) + "\n```")

    result = LLMExtractor(client=client, chunker=passthrough_chunker()).extract(group)

    assert result.decisions == []
    assert result.discussion is None


def test_unknown_source_event_falls_back_to_first_event(group):
    payload = {"decisions": [{"title": "Pick Postgres", "source_event_id": "github:nope"}]}
    client = claude_reply(json.dumps(payload))

    result = LLMExtractor(client=client, chunker=passthrough_chunker()).extract(group)

    assert result.decisions[0].source_event_ids == ["github:pull_request-1"]


@pytest.mark.parametrize("reply", ["not json at all", "[1, 2, 3]"])
def test_bad_reply_raises_extraction_error(group, reply):
    extractor = LLMExtractor(client=claude_reply(reply), chunker=passthrough_chunker())

    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(group)

    assert exc_info.value.group_key == "file:src/cache.py"


def test_request_failure_raises_extraction_error(group):
    client = Mock()
    client.messages.create.side_effect = RuntimeError("overloaded")

    with pytest.raises(ExtractionError, match="overloaded"):
        LLMExtractor(client=client, chunker=passthrough_chunker()).extract(group)


def test_missing_client_raises(group):
    extractor = LLMExtractor(chunker=passthrough_chunker())

    assert extractor.client is None
    with pytest.raises(ExtractionError):
        extractor.extract(group)


def test_event_content_is_truncated(group):
    chunker = Mock()
    chunker.truncate.return_value = "TRUNCATED"
    client = claude_reply("{}")

    LLMExtractor(client=client, chunker=chunker).extract(group)

    prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
    assert "TRUNCATED" in prompt
    assert "We decided to use Redis" not in prompt
