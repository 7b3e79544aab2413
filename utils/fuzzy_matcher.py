from difflib import SequenceMatcher
import re


class FuzzyMatcher:
    @staticmethod
    def similarity(str1: str, str2: str) -> float:
        """Return similarity score between 0 and 1"""
        return SequenceMatcher(None, str1.lower(), str2.lower()).ratio()

    @staticmethod
    def is_match(str1: str, str2: str, threshold: float = 0.85) -> bool:
        """Check if two strings are fuzzy matches"""
        return FuzzyMatcher.similarity(str1, str2) >= threshold

    @staticmethod
    def mentions(text: str, name: str, threshold: float = 0.85) -> bool:
        """Check if text mentions name, tolerating dash/space/case differences"""
        if not text or not name:
            return False

        norm_name = re.sub(r"[\s_\-]+", " ", name.lower()).strip()
        norm_text = re.sub(r"[\s_\-]+", " ", text.lower())
        if norm_name in norm_text:
            return True

        # Compare against word windows of the same length as the name
        name_words = norm_name.split()
        text_words = norm_text.split()
        width = len(name_words)
        for i in range(len(text_words) - width + 1):
            window = " ".join(text_words[i:i + width])
            if FuzzyMatcher.is_match(window, norm_name, threshold):
                return True
        return False
