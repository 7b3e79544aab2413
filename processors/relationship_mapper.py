from typing import List, Dict, Optional
from datetime import datetime, timedelta
from models.extraction import EventGroup, ExtractionResult, EntityRef, RelationshipCandidate
from models.decision_record import DecisionRecord
from models.feature_context import FeatureContext
from models.file_context_history import FileContextHistory
from utils.fuzzy_matcher import FuzzyMatcher
from utils.keywords import significant_words
import logging

logger = logging.getLogger(__name__)

DISCUSSED_IN_STRENGTH = 0.8
FEATURE_FILE_STRENGTH = 0.9
FILE_CONTRIBUTOR_STRENGTH = 0.7
DECISION_CONTRIBUTOR_STRENGTH = 0.6

# Floor for a decision whose own event references the file
CO_REFERENCE_STRENGTH = 0.3


def contributor_ref(platform: str, author: str) -> EntityRef:
    return EntityRef(type="contributor", source_id=f"{platform}:{author}")


class RelationshipMapper:
    """Derives candidate edges between the artifacts extracted from one group

    Strengths are computed from the group alone; the store keeps the
    strongest value seen for each (source, target, type).
    """

    def map(self, result: ExtractionResult, group: EventGroup) -> List[RelationshipCandidate]:
        if not group.events:
            return []

        platform = group.events[0].platform
        candidates: List[RelationshipCandidate] = []
        file_paths = [f.path for f in result.files]

        for decision in result.decisions:
            decision_ref = EntityRef(type="decision", source_id=decision.source_id)

            if result.discussion:
                candidates.append(RelationshipCandidate(
                    source=decision_ref,
                    target=EntityRef(type="discussion", source_id=result.discussion.source_id),
                    type="discussed_in",
                    strength=DISCUSSED_IN_STRENGTH,
                ))

            for history in result.files:
                strength = self.decision_file_strength(decision, history, group)
                if strength > 0:
                    candidates.append(RelationshipCandidate(
                        source=decision_ref,
                        target=EntityRef(type="file", source_id=history.path),
                        type="relates_to",
                        strength=strength,
                    ))

            for feature in result.features:
                strength = self.decision_feature_strength(decision, feature, group)
                if strength > 0:
                    candidates.append(RelationshipCandidate(
                        source=decision_ref,
                        target=EntityRef(type="feature", source_id=feature.source_id),
                        type="introduced_by",
                        strength=strength,
                    ))

            for participant in decision.participants:
                candidates.append(RelationshipCandidate(
                    source=decision_ref,
                    target=contributor_ref(platform, participant),
                    type="introduced_by",
                    strength=DECISION_CONTRIBUTOR_STRENGTH,
                ))

        for feature in result.features:
            for path in feature.files:
                if path not in file_paths:
                    continue
                candidates.append(RelationshipCandidate(
                    source=EntityRef(type="feature", source_id=feature.source_id),
                    target=EntityRef(type="file", source_id=path),
                    type="modified_by",
                    strength=FEATURE_FILE_STRENGTH,
                ))

        for history in result.files:
            for contributor in history.contributors:
                candidates.append(RelationshipCandidate(
                    source=EntityRef(type="file", source_id=history.path),
                    target=contributor_ref(platform, contributor),
                    type="modified_by",
                    strength=FILE_CONTRIBUTOR_STRENGTH,
                ))

        deduped = self.dedupe(candidates + list(result.relationships))
        logger.debug(f"Mapped {len(deduped)} relationships for group {group.key}")
        return deduped

    def dedupe(self, candidates: List[RelationshipCandidate]) -> List[RelationshipCandidate]:
        """One candidate per (source, target, type), keeping the highest strength"""
        best: Dict[tuple, RelationshipCandidate] = {}
        for candidate in candidates:
            if candidate.source == candidate.target:
                continue
            current = best.get(candidate.key)
            if current is None or candidate.strength > current.strength:
                best[candidate.key] = candidate
        return list(best.values())

    def decision_file_strength(self, decision: DecisionRecord, history: FileContextHistory, group: EventGroup) -> float:
        text = f"{decision.title}\n{decision.description}".lower()
        path = history.path.lower()
        strength = 0.0

        if path in text:
            strength += 0.5

        extension = path.rsplit(".", 1)[-1] if "." in path else ""
        if extension and f".{extension}" in text:
            strength += 0.2

        common = significant_words(text) & significant_words(" ".join(history.change_reasons))
        strength += 0.1 * len(common)

        if any(e.event_key in decision.source_event_ids and history.path in e.file_refs for e in group.events):
            strength = max(strength, CO_REFERENCE_STRENGTH)

        return round(min(strength, 1.0), 4)

    def decision_feature_strength(self, decision: DecisionRecord, feature: FeatureContext, group: EventGroup) -> float:
        text = f"{decision.title}\n{decision.description}"
        mentioned = FuzzyMatcher.mentions(text, feature.name)
        shared = set(decision.participants) & set(feature.contributors)
        if not mentioned and not shared:
            return 0.0

        strength = 0.6 if mentioned else 0.0
        strength += 0.2 * len(shared)

        feature_time = self._first_seen(feature.source_event_ids, group)
        if decision.decided_at and feature_time and abs(decision.decided_at - feature_time) < timedelta(days=7):
            strength += 0.2

        return round(min(strength, 1.0), 4)

    def _first_seen(self, event_keys: List[str], group: EventGroup) -> Optional[datetime]:
        times = [e.timestamp for e in group.events if e.event_key in event_keys]
        return min(times) if times else None
