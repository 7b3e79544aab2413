from abc import ABC, abstractmethod
from typing import List, Dict, Optional
from models.platform_event import NormalizedEvent
from models.extraction import EventGroup, ExtractionResult
from models.decision_record import DecisionRecord
from models.discussion_summary import DiscussionSummary
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory
from utils.text_cleaner import TextCleaner
from utils.string_list import merge_string_lists
from utils.keywords import (
    DECISION_KEYWORDS,
    RATIONALE_KEYWORDS,
    ACTION_ITEM_KEYWORDS,
    ALTERNATIVES_PATTERN,
    CONSEQUENCE_PATTERNS,
    FEATURE_PATTERNS,
    FEATURE_STATUS_KEYWORDS,
    CHANGE_REASON_PATTERNS,
    BULLET_PATTERN,
    contains_any,
)
import re
import logging

logger = logging.getLogger(__name__)

# Event types that carry conversation worth summarizing
DISCUSSION_EVENT_TYPES = {"message", "thread", "discussion", "issue", "pull_request"}

SUMMARY_MAX_EVENTS = 3
SUMMARY_MAX_LENGTH = 500
TITLE_MAX_LENGTH = 100


def discussion_source_id(group: EventGroup) -> str:
    first = group.events[0]
    if first.thread_id:
        return f"{first.platform}:{first.thread_id}"
    return group.key


class Extractor(ABC):
    """Derives structured knowledge from one event group"""

    @abstractmethod
    def extract(self, group: EventGroup) -> ExtractionResult:
        """Raises ExtractionError when the group cannot be processed"""
        pass


class HeuristicExtractor(Extractor):
    """
    Deterministic keyword and pattern based extraction

    No external calls, so the same group always yields the same result.
    """

    def extract(self, group: EventGroup) -> ExtractionResult:
        if not group.events:
            return ExtractionResult()

        decisions = self.extract_decisions(group)
        return ExtractionResult(
            decisions=decisions,
            discussion=self.summarize(group),
            features=self.build_features(group),
            files=self.build_file_histories(group, decisions),
        )

    # Decisions
    def extract_decisions(self, group: EventGroup) -> List[DecisionRecord]:
        decisions = []
        participants = group.participants
        for event in group.events:
            text = f"{event.title}\n{event.content}" if event.title else event.content
            if not contains_any(text, DECISION_KEYWORDS):
                continue

            title = TextCleaner.first_sentence(event.title or event.content, TITLE_MAX_LENGTH) or "Decision"
            decisions.append(DecisionRecord(
                source_id=f"{event.platform}:{event.platform_id}",
                title=title,
                description=TextCleaner.clean(event.content),
                rationale=self.extract_rationale(event.content),
                alternatives=self._pattern_matches([ALTERNATIVES_PATTERN], event.content),
                consequences=self._pattern_matches(CONSEQUENCE_PATTERNS, event.content),
                participants=participants,
                source_event_ids=[event.event_key],
                platform=event.platform,
                decided_at=event.timestamp,
            ))
        return decisions

    def extract_rationale(self, content: str) -> str:
        lowered = content.lower()
        for keyword in RATIONALE_KEYWORDS:
            idx = lowered.find(keyword)
            if idx != -1:
                sentences = TextCleaner.sentences(content[idx:])
                return sentences[0].rstrip(".") if sentences else ""
        return ""

    def _pattern_matches(self, patterns, content: str) -> List[str]:
        matches = []
        for line in content.splitlines():
            for pattern in patterns:
                match = pattern.search(line)
                if match:
                    value = match.group(1).strip()
                    if value and value not in matches:
                        matches.append(value)
        return matches

    # Discussion
    def summarize(self, group: EventGroup) -> Optional[DiscussionSummary]:
        if not any(e.event_type in DISCUSSION_EVENT_TYPES for e in group.events):
            return None

        first = group.events[0]
        return DiscussionSummary(
            source_id=discussion_source_id(group),
            thread_id=first.thread_id,
            platform=first.platform,
            participants=group.participants,
            summary=self.summary_text(group.events),
            key_points=self.key_points(group.events),
            action_items=self.action_items(group.events),
            file_refs=merge_string_lists(*(e.file_refs for e in group.events)),
            feature_refs=merge_string_lists(*(e.feature_refs for e in group.events)),
            source_event_ids=group.event_ids,
            started_at=group.events[0].timestamp,
            ended_at=group.events[-1].timestamp,
        )

    def summary_text(self, events: List[NormalizedEvent]) -> str:
        parts = []
        for event in events[:SUMMARY_MAX_EVENTS]:
            sentence = TextCleaner.first_sentence(event.content or event.title, SUMMARY_MAX_LENGTH)
            if sentence:
                parts.append(sentence.rstrip("."))
        return TextCleaner.truncate(". ".join(parts), SUMMARY_MAX_LENGTH)

    def key_points(self, events: List[NormalizedEvent]) -> List[str]:
        points = []
        for event in events:
            for line in event.content.splitlines():
                match = BULLET_PATTERN.match(line)
                if match and match.group(1).strip() not in points:
                    points.append(match.group(1).strip())
        return points

    def action_items(self, events: List[NormalizedEvent]) -> List[str]:
        items = []
        for event in events:
            for sentence in TextCleaner.sentences(event.content):
                if contains_any(sentence, ACTION_ITEM_KEYWORDS) and sentence not in items:
                    items.append(sentence)
        return items

    # Features
    def build_features(self, group: EventGroup) -> List[FeatureContext]:
        features: Dict[str, FeatureContext] = {}
        for event in group.events:
            names = list(event.feature_refs) + self.feature_names(event.content)
            for name in names:
                slug = TextCleaner.slugify(name)
                if not slug:
                    continue
                existing = features.get(slug)
                features[slug] = FeatureContext(
                    source_id=slug,
                    name=existing.name if existing else name.strip(),
                    description=(existing.description if existing and existing.description
                                 else self.feature_description(event.content, name)),
                    status=self.infer_feature_status(event.content),
                    files=merge_string_lists(existing.files if existing else [], event.file_refs),
                    contributors=merge_string_lists(existing.contributors if existing else [], [event.author] if event.author else []),
                    source_event_ids=merge_string_lists(existing.source_event_ids if existing else [], [event.event_key]),
                )
        return list(features.values())

    def feature_names(self, content: str) -> List[str]:
        names = []
        for pattern in FEATURE_PATTERNS:
            match = pattern.search(content)
            if match:
                name = match.group(1).strip()
                if name and name not in names:
                    names.append(name)
        return names

    def feature_description(self, content: str, name: str) -> str:
        idx = content.lower().find(name.lower())
        if idx == -1:
            return ""
        start = max(0, idx - 50)
        end = min(len(content), idx + len(name) + 100)
        return TextCleaner.clean(content[start:end])

    def infer_feature_status(self, content: str) -> str:
        lowered = content.lower()
        for keywords, status in FEATURE_STATUS_KEYWORDS:
            if any(re.search(rf"\b{re.escape(k)}\b", lowered) for k in keywords):
                return status
        return "in_progress"

    # Files
    def build_file_histories(self, group: EventGroup, decisions: List[DecisionRecord]) -> List[FileContextHistory]:
        histories: Dict[str, FileContextHistory] = {}
        decision_ids = [d.source_id for d in decisions]
        for event in group.events:
            reason = self.change_reason(event)
            for path in event.file_refs:
                existing = histories.get(path)
                histories[path] = FileContextHistory(
                    path=path,
                    change_reasons=merge_string_lists(existing.change_reasons if existing else [], [reason]),
                    contributors=merge_string_lists(existing.contributors if existing else [], [event.author] if event.author else []),
                    related_decisions=decision_ids,
                    source_event_ids=merge_string_lists(existing.source_event_ids if existing else [], [event.event_key]),
                    last_modified=event.timestamp,
                )
        return list(histories.values())

    def change_reason(self, event: NormalizedEvent) -> str:
        text = event.content or event.title
        for line in text.splitlines():
            for pattern in CHANGE_REASON_PATTERNS:
                match = pattern.search(line)
                if match:
                    return TextCleaner.truncate(match.group(1).strip(), 200)
        return TextCleaner.first_sentence(event.title or event.content, 200) or "File modification discussed"
