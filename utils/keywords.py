"""Keyword tables and patterns used by the heuristic extractor"""
import re

DECISION_KEYWORDS = [
    "decided", "decision", "we should", "let's use", "going with",
    "agreed", "consensus", "resolved", "conclusion", "final decision",
]

RATIONALE_KEYWORDS = ["because", "since", "due to", "reason", "rationale"]

ACTION_ITEM_KEYWORDS = ["todo", "action", "need to", "should", "must", "will"]

ALTERNATIVES_PATTERN = re.compile(r"alternatives?:?\s*(.+)", re.IGNORECASE)

CONSEQUENCE_PATTERNS = [
    re.compile(r"consequences?:?\s*(.+)", re.IGNORECASE),
    re.compile(r"impact:\s*(.+)", re.IGNORECASE),
    re.compile(r"this means:?\s*(.+)", re.IGNORECASE),
]

FEATURE_PATTERNS = [
    re.compile(r"\bfeature[:\s]+([a-zA-Z0-9][\w\- ]{1,48}[\w])", re.IGNORECASE),
    re.compile(r"\bimplement(?:ing|ed)?[:\s]+([a-zA-Z0-9][\w\- ]{1,48}[\w])", re.IGNORECASE),
    re.compile(r"\badd(?:ing|ed)?[:\s]+([a-zA-Z0-9][\w\- ]{1,48}[\w])", re.IGNORECASE),
]

FEATURE_STATUS_KEYWORDS = [
    (("completed", "done", "shipped", "merged"), "completed"),
    (("working on", "in progress", "wip"), "in_progress"),
    (("planning", "planned", "will", "next sprint"), "planned"),
    (("cancelled", "canceled", "dropped", "abandoned"), "cancelled"),
]

CHANGE_REASON_PATTERNS = [
    re.compile(r"changed because\s+(.+)", re.IGNORECASE),
    re.compile(r"updated to\s+(.+)", re.IGNORECASE),
    re.compile(r"modified for\s+(.+)", re.IGNORECASE),
    re.compile(r"(?:fix|fixes|fixed)\s+(.+)", re.IGNORECASE),
]

BULLET_PATTERN = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$")

FILE_PATH_PATTERN = re.compile(r"(?<![\w/])((?:[\w.\-]+/)*[\w.\-]+\.([a-zA-Z0-9]{1,6}))\b")

CODE_FILE_EXTENSIONS = {
    "py", "go", "js", "ts", "tsx", "jsx", "java", "kt", "rb", "rs", "c", "h",
    "cc", "cpp", "hpp", "cs", "php", "swift", "scala", "sql", "sh", "yaml",
    "yml", "json", "toml", "md", "proto", "tf", "css", "scss", "html", "vue",
}

STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "is", "are", "was", "were", "be", "been", "this",
    "that", "it", "we", "i", "you", "they", "our", "as", "so", "not", "use",
}


def contains_any(text: str, keywords) -> bool:
    lowered = text.lower()
    return any(k in lowered for k in keywords)


def extract_file_paths(text: str):
    """File-looking tokens whose extension is a known code extension"""
    if not text:
        return []
    paths = []
    for match in FILE_PATH_PATTERN.finditer(text):
        path, ext = match.group(1), match.group(2).lower()
        if ext in CODE_FILE_EXTENSIONS and path not in paths:
            paths.append(path)
    return paths


def significant_words(text: str):
    words = re.findall(r"[a-zA-Z][a-zA-Z0-9_]+", text.lower())
    return {w for w in words if w not in STOP_WORDS and len(w) > 2}
