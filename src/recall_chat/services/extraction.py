"""Memory extraction from a finished exchange.

Used when replies are plain text: a separate low-temperature completion
reads the recent conversation and returns the facts worth remembering.
"""

from typing import Dict, List, Optional, Sequence

import structlog

from ..config import Settings
from ..domain.models import CandidateMemory
from .llm import CompletionClient, CompletionOptions
from .parser import ResponseParser

logger = structlog.get_logger()

EXTRACTION_SYSTEM_PROMPT = """You extract long-term memories about the user from a conversation.

Return JSON only, in this shape:
{"memories": [{"content": "...", "category": "...", "importance": "...", "type": "..."}]}

- content: one short, self-contained fact about the user, in third person
- category: one of personal_facts, preferences, goals, events, skills, projects, name, friends, family
- importance: high, medium or low
- type: "user" for durable facts, "session" for things only relevant to this conversation

Only extract what the user said about themselves. Ignore the assistant's own statements.
Return {"memories": []} when nothing is worth remembering."""

# Turns of history included before the exchange being analysed.
HISTORY_WINDOW = 6


def build_extraction_prompt(
    conversation: Sequence[Dict[str, str]], latest_reply: str
) -> str:
    """Render the exchange as tagged transcript text."""
    turns = [t for t in conversation if t.get("role") in ("user", "assistant")]
    if turns and latest_reply and turns[-1].get("role") == "assistant":
        turns = turns[:-1]

    lines = [
        f"<{t['role']}>{t.get('content', '')}</{t['role']}>"
        for t in turns[-HISTORY_WINDOW:]
    ]
    if latest_reply:
        lines.append(f"<assistant>{latest_reply}</assistant>")
    return "<conversation>\n" + "\n".join(lines) + "\n</conversation>\n\nAnalyze this exchange. Return JSON only."


class MemoryExtractor:
    """Asks the model which facts from a conversation to remember."""

    def __init__(
        self,
        client: CompletionClient,
        settings: Settings,
        parser: Optional[ResponseParser] = None,
    ) -> None:
        self.client = client
        self.parser = parser or ResponseParser()
        self.options = CompletionOptions(
            max_tokens=settings.extraction_max_tokens,
            temperature=settings.extraction_temperature,
            response_format="json",
        )

    async def extract(
        self, conversation: Sequence[Dict[str, str]], latest_reply: str
    ) -> List[CandidateMemory]:
        """Candidate memories for the exchange. Propagates CompletionUnavailable."""
        if not any(t.get("role") == "user" for t in conversation):
            return []
        prompt = build_extraction_prompt(conversation, latest_reply)
        raw = await self.client.complete(
            EXTRACTION_SYSTEM_PROMPT,
            [{"role": "user", "content": prompt}],
            self.options,
        )
        candidates = self.parser.parse_memories(raw)
        logger.info("memories_extracted", candidate_count=len(candidates))
        return candidates
