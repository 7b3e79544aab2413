import yaml
import os
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
from models.extraction import EventGroup
from models.platform_event import NormalizedEvent
import logging

logger = logging.getLogger(__name__)

# Sections every extraction prompt file must define
REQUIRED_SECTIONS = ("system_role", "output_format", "final_instruction")

DEFAULT_GROUP_FORMAT = "Group: {key} ({kind}), participants: {participants}"
DEFAULT_EVENT_FORMAT = "[{timestamp}] {event_type} by {author}: {title}\n{content}"


class PromptManager:
    """
    YAML prompt templates for extraction, reloaded when the file changes

    Each template is a mapping of sections (role, group header, event
    format, instructions, output schema). Templates are validated on load
    so a broken edit surfaces as an error instead of a malformed prompt.
    """

    def __init__(self, prompts_dir: Optional[str] = None):
        self.prompts_dir = Path(prompts_dir) if prompts_dir else Path(__file__).parent
        self._templates: Dict[str, Dict[str, Any]] = {}
        self._mtimes: Dict[str, float] = {}
        logger.info(f"PromptManager reading templates from {self.prompts_dir}")

    def get_prompt_config(self, prompt_name: str) -> Dict[str, Any]:
        """
        Template sections for prompt_name, re-read when the file's mtime changes

        Raises:
            FileNotFoundError: No <prompt_name>.yaml in the prompts directory
            ValueError: The file is not a mapping or lacks a required section
        """
        path = self.prompts_dir / f"{prompt_name}.yaml"
        if not path.exists():
            raise FileNotFoundError(f"Prompt file not found: {path}")

        mtime = os.path.getmtime(path)
        if self._mtimes.get(prompt_name) != mtime:
            with open(path, "r") as f:
                template = yaml.safe_load(f)
            self._validate(prompt_name, template)
            self._templates[prompt_name] = template
            self._mtimes[prompt_name] = mtime
            logger.info(f"Loaded prompt template '{prompt_name}'")

        return self._templates[prompt_name]

    @staticmethod
    def _validate(prompt_name: str, template: Any) -> None:
        if not isinstance(template, dict):
            raise ValueError(f"Prompt template '{prompt_name}' must be a mapping")
        missing = [s for s in REQUIRED_SECTIONS if not template.get(s)]
        if missing:
            raise ValueError(f"Prompt template '{prompt_name}' is missing: {', '.join(missing)}")

    def build_extraction_prompt(
        self,
        group: EventGroup,
        truncate: Optional[Callable[[str], str]] = None,
        prompt_name: str = "context_extraction",
    ) -> str:
        """
        Render the extraction prompt for one event group

        Args:
            group: Events to extract from, oldest first
            truncate: Optional callable shortening each event body
            prompt_name: Template to render

        Returns:
            Prompt text ready for Claude
        """
        template = self.get_prompt_config(prompt_name)

        parts = [template["system_role"].rstrip()]
        parts.append(self.render_group_header(group, template.get("group_section") or {}))
        parts.append(self.render_events(group.events, template.get("events_section") or {}, truncate))
        parts.extend(self._numbered("INSTRUCTIONS", template.get("instructions")))
        parts.extend(self._bulleted("CRITICAL", template.get("critical_guidelines")))
        parts.append("")
        parts.append(template["output_format"].rstrip())
        parts.append("")
        parts.append(template["final_instruction"].rstrip())
        return "\n".join(parts)

    @staticmethod
    def render_group_header(group: EventGroup, section: Dict[str, Any]) -> str:
        return section.get("format", DEFAULT_GROUP_FORMAT).format(
            key=group.key,
            kind=group.kind,
            participants=", ".join(group.participants) or "unknown",
        )

    @staticmethod
    def render_events(
        events: List[NormalizedEvent],
        section: Dict[str, Any],
        truncate: Optional[Callable[[str], str]] = None,
    ) -> str:
        max_items = section.get("max_items", 20)
        event_format = section.get("format", DEFAULT_EVENT_FORMAT)

        lines = ["", section.get("header", "EVENTS:")]
        for event in events[:max_items]:
            lines.append(event_format.format(
                id=event.event_key,
                timestamp=event.timestamp.isoformat(),
                event_type=event.event_type,
                author=event.author or "unknown",
                title=event.title or "",
                content=truncate(event.content) if truncate else event.content,
                files=", ".join(event.file_refs) or "none",
            ))

        omitted = len(events) - max_items
        if omitted > 0:
            lines.append(f"... {omitted} more events omitted")
        return "\n".join(lines)

    @staticmethod
    def _numbered(title: str, items: Optional[List[str]]) -> List[str]:
        if not items:
            return []
        return ["", f"{title}:"] + [f"{i}. {item}" for i, item in enumerate(items, 1)]

    @staticmethod
    def _bulleted(title: str, items: Optional[List[str]]) -> List[str]:
        if not items:
            return []
        return ["", f"{title}:"] + [f"- {item}" for item in items]


# Singleton instance
prompt_manager = PromptManager()
