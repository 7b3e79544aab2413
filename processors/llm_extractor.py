from typing import List, Dict, Any, Optional
from anthropic import Anthropic
from processors.heuristic_extractor import Extractor, discussion_source_id
from prompts.prompt_manager import PromptManager, prompt_manager
from services.chunker import Chunker
from models.extraction import EventGroup, ExtractionResult
from models.decision_record import DecisionRecord
from models.discussion_summary import DiscussionSummary
from models.feature_context import FeatureContext, FEATURE_STATUSES
from models.file_context_history import FileContextHistory
from errors import ExtractionError
from utils.text_cleaner import TextCleaner
from utils.string_list import merge_string_lists
from config import settings
import json
import logging

logger = logging.getLogger(__name__)

# Token budget per event body inside the prompt
MAX_EVENT_TOKENS = 800


class LLMExtractor(Extractor):
    """Extraction through Claude with the context_extraction prompt"""

    def __init__(
        self,
        client: Optional[Anthropic] = None,
        model: Optional[str] = None,
        prompts: Optional[PromptManager] = None,
        chunker: Optional[Chunker] = None,
    ):
        self.client = client
        if self.client is None and settings.ANTHROPIC_API_KEY:
            self.client = Anthropic(api_key=settings.ANTHROPIC_API_KEY)
        self.model = model or settings.EXTRACTION_MODEL
        self.prompts = prompts or prompt_manager
        self.chunker = chunker or Chunker()

    def extract(self, group: EventGroup) -> ExtractionResult:
        if self.client is None:
            raise ExtractionError(group.key, "Anthropic client not configured (ANTHROPIC_API_KEY missing)")
        if not group.events:
            return ExtractionResult()

        prompt = self.prompts.build_extraction_prompt(
            group,
            truncate=lambda text: self.chunker.truncate(text, MAX_EVENT_TOKENS),
        )

        try:
            logger.info(f"Sending extraction request to Claude (group {group.key}, {len(group.events)} events, prompt {len(prompt)} chars)")
            response = self.client.messages.create(
                model=self.model,
                max_tokens=4096,
                messages=[{"role": "user", "content": prompt}]
            )
            content = response.content[0].text.strip()
        except Exception as e:
            logger.error(f"Claude request failed for group {group.key}: {e}", exc_info=True)
            raise ExtractionError(group.key, f"model request failed: {e}") from e

        # Remove markdown code blocks if present
        if content.startswith("```"):
            lines = content.split("\n")
            content = "\n".join(lines[1:-1]) if len(lines) > 2 else content
            content = content.replace("```json", "").replace("```", "").strip()

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"JSON parsing error for group {group.key}: {e}")
            logger.error(f"Raw content that failed to parse: {content[:1000]}")
            raise ExtractionError(group.key, f"invalid JSON from model: {e}") from e

        if not isinstance(payload, dict):
            raise ExtractionError(group.key, "model response is not a JSON object")

        return self._to_result(group, payload)

    def _to_result(self, group: EventGroup, payload: Dict[str, Any]) -> ExtractionResult:
        events_by_key = {e.event_key: e for e in group.events}
        participants = group.participants

        decisions = []
        for item in payload.get("decisions") or []:
            if not item.get("title"):
                continue
            event = events_by_key.get(item.get("source_event_id")) or group.events[0]
            decisions.append(DecisionRecord(
                source_id=f"{event.platform}:{event.platform_id}",
                title=TextCleaner.truncate(item["title"], 100),
                description=item.get("description", ""),
                rationale=item.get("rationale", ""),
                alternatives=[str(a) for a in item.get("alternatives") or []],
                consequences=[str(c) for c in item.get("consequences") or []],
                participants=participants,
                source_event_ids=[event.event_key],
                platform=event.platform,
                decided_at=event.timestamp,
            ))

        discussion = None
        summary = payload.get("summary") or {}
        if summary.get("text"):
            first = group.events[0]
            discussion = DiscussionSummary(
                source_id=discussion_source_id(group),
                thread_id=first.thread_id,
                platform=first.platform,
                participants=participants,
                summary=TextCleaner.truncate(summary["text"], 500),
                key_points=[str(p) for p in summary.get("key_points") or []],
                action_items=[str(a) for a in summary.get("action_items") or []],
                file_refs=merge_string_lists(*(e.file_refs for e in group.events)),
                feature_refs=merge_string_lists(*(e.feature_refs for e in group.events)),
                source_event_ids=group.event_ids,
                started_at=group.events[0].timestamp,
                ended_at=group.events[-1].timestamp,
            )

        features = []
        for item in payload.get("features") or []:
            slug = TextCleaner.slugify(item.get("name", ""))
            if not slug:
                continue
            status = item.get("status", "in_progress")
            features.append(FeatureContext(
                source_id=slug,
                name=item["name"],
                description=item.get("description", ""),
                status=status if status in FEATURE_STATUSES else "in_progress",
                files=[str(f) for f in item.get("files") or []],
                contributors=participants,
                source_event_ids=group.event_ids,
            ))

        known_files = merge_string_lists(*(e.file_refs for e in group.events))
        files = []
        for item in payload.get("files") or []:
            path = item.get("path")
            # Only files the events actually reference
            if not path or path not in known_files:
                continue
            touching = [e for e in group.events if path in e.file_refs]
            files.append(FileContextHistory(
                path=path,
                change_reasons=[item.get("change_reason") or "File modification discussed"],
                contributors=merge_string_lists([e.author for e in touching if e.author]),
                related_decisions=[d.source_id for d in decisions],
                source_event_ids=[e.event_key for e in touching],
                last_modified=touching[-1].timestamp,
            ))

        logger.info(
            f"Extracted {len(decisions)} decisions, {len(features)} features, {len(files)} files "
            f"from group {group.key}"
        )
        return ExtractionResult(decisions=decisions, discussion=discussion, features=features, files=files)
