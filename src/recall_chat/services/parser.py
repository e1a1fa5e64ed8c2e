"""Parsing of raw completion text.

Two conventions are supported. In ``text`` mode the model's output is the
reply. In ``json`` mode the model is asked for a single object::

    {"response": "...", "memories": [{"content", "category", "importance", "type"}]}

Models do not always comply, so nothing here raises: malformed output falls
back to the raw text as the reply, with the failure recorded in
``parse_error`` for the debug channel.
"""

import json
from typing import Any, List, Optional, Tuple

import structlog

from ..domain.errors import ResponseParseError
from ..domain.models import CandidateMemory, ParsedResponse

logger = structlog.get_logger()

TEXT_MODE = "text"
JSON_MODE = "json"


def _load_object(raw: str) -> dict:
    """Decode a JSON object, tolerating a markdown fence or surrounding prose."""
    text = raw.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            raise ResponseParseError(f"invalid JSON: {exc.msg}") from exc
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError as inner:
            raise ResponseParseError(f"invalid JSON: {inner.msg}") from inner
    if not isinstance(data, dict):
        raise ResponseParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _candidates(items: Any) -> Tuple[List[CandidateMemory], int]:
    """Build candidates from a ``memories`` value. Returns (candidates, skipped)."""
    if not isinstance(items, list):
        return [], 0 if items is None else 1

    memories: List[CandidateMemory] = []
    skipped = 0
    for item in items:
        if isinstance(item, str):
            item = {"content": item}
        if not isinstance(item, dict):
            skipped += 1
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            skipped += 1
            continue
        fields = {"content": content.strip()}
        for key in ("category", "importance", "type"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                fields[key] = value.strip().lower()
        memories.append(CandidateMemory(**fields))
    return memories, skipped


class ResponseParser:
    """Turns raw completion text into a reply plus candidate memories."""

    def parse(self, raw: str, mode: str = TEXT_MODE) -> ParsedResponse:
        raw = raw if isinstance(raw, str) else ""
        fallback = raw.strip() or raw

        if mode != JSON_MODE:
            return ParsedResponse(reply=fallback)

        try:
            data = _load_object(raw)
        except ResponseParseError as e:
            logger.warning("response_parse_failed", error=str(e), raw_length=len(raw))
            return ParsedResponse(reply=fallback, parse_error=str(e))

        reply = data.get("response")
        if not isinstance(reply, str) or not reply.strip():
            error = "missing or empty 'response' field"
            logger.warning("response_parse_failed", error=error, raw_length=len(raw))
            return ParsedResponse(reply=fallback, parse_error=error)

        memories, skipped = _candidates(data.get("memories"))
        parse_error: Optional[str] = None
        if skipped:
            parse_error = f"skipped {skipped} malformed memory entries"
            logger.info("memory_entries_skipped", skipped=skipped)
        return ParsedResponse(reply=reply.strip(), memories=memories, parse_error=parse_error)

    def parse_memories(self, raw: str) -> List[CandidateMemory]:
        """Parse a bare ``{"memories": [...]}`` extraction payload."""
        try:
            data = _load_object(raw if isinstance(raw, str) else "")
        except ResponseParseError as e:
            logger.warning("extraction_parse_failed", error=str(e))
            return []
        memories, skipped = _candidates(data.get("memories"))
        if skipped:
            logger.info("memory_entries_skipped", skipped=skipped)
        return memories
