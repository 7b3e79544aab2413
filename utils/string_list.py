"""Serialization for string-list columns (labels, files_changed, participants ...)

One convention for both directions: None and [] both encode to "[]", and
None, "" and "null" all decode to []. Encoding is compact JSON so the stored
bytes are stable for equal inputs.
"""
import json
from typing import Iterable, List, Optional


def encode_string_list(values: Optional[Iterable[str]]) -> str:
    if values is None:
        return "[]"
    items = list(values)
    for item in items:
        if not isinstance(item, str):
            raise ValueError(f"string list contains non-string item: {item!r}")
    return json.dumps(items, separators=(",", ":"), ensure_ascii=False)


def decode_string_list(raw: Optional[str]) -> List[str]:
    if raw is None or raw == "" or raw == "null":
        return []
    value = json.loads(raw)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"not a JSON string list: {raw!r}")
    return value


def merge_string_lists(*lists: Optional[Iterable[str]]) -> List[str]:
    """Order preserving union"""
    merged: List[str] = []
    for values in lists:
        for value in values or []:
            if value not in merged:
                merged.append(value)
    return merged
