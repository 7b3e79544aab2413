"""Tests for PromptManager template loading and rendering"""
import os
import pytest
from prompts.prompt_manager import PromptManager
from models.extraction import EventGroup
from tests.fixtures.ingestion_fixtures import normalized_event

TEMPLATE = """
system_role: You are an archivist.
group_section:
  format: "GROUP {key} [{kind}] {participants}"
events_section:
  header: "EVENTS:"
  max_items: 2
  format: "{id} {author}: {content} ({files})"
instructions:
  - First rule
  - Second rule
output_format: Return JSON.
final_instruction: {final}
"""


def write_template(directory, final="Go.", name="context_extraction"):
    path = directory / f"{name}.yaml"
    path.write_text(TEMPLATE.replace("{final}", final))
    return path


@pytest.fixture
def group():
    events = [
        normalized_event(1, content="first", files=["src/a.py"], author="alice"),
        normalized_event(2, content="second", author="bob"),
        normalized_event(3, content="third", author="alice"),
    ]
    return EventGroup(key="file:src/a.py", kind="file", events=events)


def test_build_extraction_prompt(tmp_path, group):
    write_template(tmp_path)

    prompt = PromptManager(str(tmp_path)).build_extraction_prompt(group)

    assert prompt.startswith("You are an archivist.")
    assert "GROUP file:src/a.py [file] alice, bob" in prompt
    assert "github:pull_request-1 alice: first (src/a.py)" in prompt
    assert "github:pull_request-2 bob: second (none)" in prompt
    assert "third" not in prompt
    assert "... 1 more events omitted" in prompt
    assert "1. First rule\n2. Second rule" in prompt
    assert "CRITICAL:" not in prompt
    assert prompt.endswith("Go.")


def test_truncate_applies_to_event_bodies(tmp_path, group):
    write_template(tmp_path)

    prompt = PromptManager(str(tmp_path)).build_extraction_prompt(group, truncate=lambda text: text[:2])

    assert "alice: fi (src/a.py)" in prompt


def test_template_reloads_when_file_changes(tmp_path):
    path = write_template(tmp_path, final="Old.")
    manager = PromptManager(str(tmp_path))
    assert manager.get_prompt_config("context_extraction")["final_instruction"] == "Old."

    write_template(tmp_path, final="New.")
    stat = os.stat(path)
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert manager.get_prompt_config("context_extraction")["final_instruction"] == "New."


def test_missing_template(tmp_path):
    with pytest.raises(FileNotFoundError):
        PromptManager(str(tmp_path)).get_prompt_config("context_extraction")


def test_template_without_required_section(tmp_path):
    (tmp_path / "broken.yaml").write_text("system_role: Hi\n")

    with pytest.raises(ValueError, match="output_format"):
        PromptManager(str(tmp_path)).get_prompt_config("broken")


def test_bundled_template_is_valid(group):
    prompt = PromptManager().build_extraction_prompt(group)

    assert "source_event_id" in prompt
    assert "github:pull_request-3" in prompt
