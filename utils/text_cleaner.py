import re
from typing import List

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


class TextCleaner:
    @staticmethod
    def clean(text: str) -> str:
        """Clean and normalize text"""
        if not text:
            return ""

        # Remove excessive whitespace
        text = re.sub(r"\s+", " ", text)

        # Remove markdown artifacts
        text = re.sub(r"\*\*", "", text)
        text = re.sub(r"__", "", text)
        text = re.sub(r"`{3}[a-zA-Z]*", "", text)

        # Normalize quotes
        text = text.replace("“", '"').replace("”", '"')
        text = text.replace("‘", "'").replace("’", "'")

        # Strip leading/trailing whitespace
        text = text.strip()

        return text

    @staticmethod
    def sentences(text: str) -> List[str]:
        """Split cleaned text into sentences"""
        cleaned = TextCleaner.clean(text)
        if not cleaned:
            return []
        return [s.strip() for s in _SENTENCE_END.split(cleaned) if s.strip()]

    @staticmethod
    def first_sentence(text: str, max_length: int = 100) -> str:
        """First sentence of the text, truncated with '...' past max_length"""
        sentences = TextCleaner.sentences(text)
        if not sentences:
            return ""
        return TextCleaner.truncate(sentences[0], max_length)

    @staticmethod
    def truncate(text: str, max_length: int) -> str:
        if len(text) <= max_length:
            return text
        return text[: max_length - 3].rstrip() + "..."

    @staticmethod
    def slugify(text: str) -> str:
        """Lowercase, dash separated key used for feature source ids"""
        slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
        return slug
