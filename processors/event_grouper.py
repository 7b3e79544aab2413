from typing import List, Dict
from models.platform_event import NormalizedEvent
from models.extraction import EventGroup
import logging

logger = logging.getLogger(__name__)


class EventGrouper:
    """
    Groups related events so they are extracted together

    Priority per event: conversation thread, then first referenced file,
    then first referenced feature. Anything else becomes its own group.
    """

    def group(self, events: List[NormalizedEvent]) -> List[EventGroup]:
        ordered = sorted(events, key=lambda e: (e.timestamp, e.event_key))

        groups: Dict[str, EventGroup] = {}
        order: List[str] = []

        for event in ordered:
            key, kind = self._group_key(event)
            if key not in groups:
                groups[key] = EventGroup(key=key, kind=kind, events=[])
                order.append(key)
            groups[key].events.append(event)

        result = [groups[key] for key in order]
        logger.debug(f"Grouped {len(events)} events into {len(result)} groups")
        return result

    def _group_key(self, event: NormalizedEvent):
        if event.thread_id:
            return f"thread:{event.platform}:{event.thread_id}", "thread"
        if event.file_refs:
            return f"file:{event.file_refs[0]}", "file"
        if event.feature_refs:
            return f"feature:{event.feature_refs[0]}", "feature"
        return f"event:{event.event_key}", "single"
