"""Extract the JSON object a vision model was asked to return."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..errors import ProviderReplyUnparseable

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)

_INVALID_ESCAPE_FINDER = re.compile(r"\\([^\"\\/bfnrtu])")


def parse_json_reply(text: str) -> Dict[str, Any]:
    """Decode a model reply: raw parse, then fenced block, then brace-matched substring."""
    if not text or not text.strip():
        raise ProviderReplyUnparseable(text or "")

    strategies: List[Tuple[str, Callable[[str], Iterator[str]]]] = [
        ("raw", _raw_candidates),
        ("fenced", _fenced_candidates),
        ("braces", _brace_candidates),
    ]
    for name, produce in strategies:
        for candidate in produce(text):
            payload = _loads_object(candidate)
            if payload is not None:
                logger.debug("Parsed model reply via %s extraction", name)
                return payload
    raise ProviderReplyUnparseable(text)


def _raw_candidates(text: str) -> Iterator[str]:
    yield text.strip()


def _fenced_candidates(text: str) -> Iterator[str]:
    for match in _FENCE_PATTERN.finditer(text):
        yield _strip_json_prefix(match.group(1).strip())


def _brace_candidates(text: str) -> Iterator[str]:
    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is not None:
            yield text[start : end + 1]
        start = text.find("{", start + 1)


def _matching_brace(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return idx
    return None


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    if not candidate:
        return None
    for attempt in (candidate, _sanitize_json_string(candidate)):
        try:
            payload = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
        return None
    return None


def _strip_json_prefix(text: str) -> str:
    if not text:
        return ""
    lowered = text.lower()
    if lowered.startswith("json"):
        return text[4:].lstrip(": \n\t")
    return text


def _sanitize_json_string(data: str) -> str:
    """Drop non-JSON escapes (CSS escaping like ``\\ `` inside selectors)."""
    if not data or "\\" not in data:
        return data
    fixed = _INVALID_ESCAPE_FINDER.sub(r"\1", data)
    return fixed.replace("\\ ", " ")
