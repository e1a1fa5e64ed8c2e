"""Chat turn orchestration.

A turn moves through these states::

    receiving_input -> building_context -> awaiting_completion -> parsing
        -> persisting -> extracting_memories -> done

``failed`` is entered from ``awaiting_completion`` or ``persisting``; the
turn still finishes by storing an apology as the assistant message, so every
accepted user message gets exactly one reply. Memory extraction is handed to
the background runner and never delays or alters the reply.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ..config import Settings
from ..domain.errors import CompletionUnavailable, ValidationError
from ..domain.models import Message, ParsedResponse, Role, TurnResult
from ..repositories.base import ChatRepository
from .llm import CompletionClient, CompletionOptions
from .memory import MemoryService
from .parser import JSON_MODE, ResponseParser
from .prompt import PromptBuilder, template_for
from .tasks import BackgroundTaskRunner

logger = structlog.get_logger()

APOLOGY_ERROR = "I'm sorry, there was an error processing your request. Please try again later."
APOLOGY_EMPTY = "I'm sorry, I couldn't generate a response at this time."

MEMORY_CONTEXT_LIMIT = 10


class TurnState(str, Enum):
    RECEIVING_INPUT = "receiving_input"
    BUILDING_CONTEXT = "building_context"
    AWAITING_COMPLETION = "awaiting_completion"
    PARSING = "parsing"
    PERSISTING = "persisting"
    EXTRACTING_MEMORIES = "extracting_memories"
    FAILED = "failed"
    DONE = "done"


class ChatOrchestrator:
    """Produces the assistant's reply for one user message."""

    def __init__(
        self,
        repository: ChatRepository,
        client: CompletionClient,
        runner: BackgroundTaskRunner,
        settings: Settings,
        prompt_builder: Optional[PromptBuilder] = None,
        parser: Optional[ResponseParser] = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.runner = runner
        self.settings = settings
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.parser = parser or ResponseParser()
        self.response_format = settings.response_format
        self.options = CompletionOptions(
            max_tokens=settings.max_completion_tokens,
            temperature=settings.temperature,
            response_format=settings.response_format,
        )

    async def handle_turn(
        self,
        chat_id: UUID,
        content: str,
        memory_service: MemoryService,
        debug: bool = False,
    ) -> TurnResult:
        """Run one turn.

        Raises ChatNotFound for an unknown chat and ValidationError for empty
        content; in both cases nothing is stored. Every other failure is
        absorbed into an apology reply.
        """
        log = logger.bind(chat_id=str(chat_id))
        debug = debug or self.settings.debug_mode
        self._advance(log, TurnState.RECEIVING_INPUT)

        await self.repository.get_chat(chat_id)
        if not isinstance(content, str) or not content.strip():
            log.warning("turn_rejected", reason="empty_content")
            raise ValidationError("Message content must not be empty")
        user_message = await self.repository.append_message(chat_id, Role.USER, content.strip())

        self._advance(log, TurnState.BUILDING_CONTEXT)
        history = await self.repository.list_messages(chat_id)
        turns = [m.as_turn() for m in history]
        memories = await memory_service.get_relevant_memories(
            query=user_message.content, limit=MEMORY_CONTEXT_LIMIT
        )
        memory_context = memory_service.format_memories_for_prompt(memories)
        system_prompt = self.prompt_builder.build(
            template_for(self.response_format), memory_context
        )
        diagnostics: Dict[str, Any] = {
            "response_format": self.response_format,
            "memories_used": len(memories),
        }

        self._advance(log, TurnState.AWAITING_COMPLETION)
        try:
            raw = await self.client.complete(system_prompt, turns, self.options)
        except CompletionUnavailable as e:
            log.error("completion_unavailable", error=str(e))
            return await self._fail(log, chat_id, user_message, APOLOGY_ERROR, diagnostics, debug, str(e))
        except Exception as e:
            log.error("completion_error", error=str(e), error_type=type(e).__name__)
            return await self._fail(log, chat_id, user_message, APOLOGY_ERROR, diagnostics, debug, str(e))

        self._advance(log, TurnState.PARSING)
        diagnostics["raw_response"] = raw
        if not raw or not raw.strip():
            log.warning("completion_empty")
            return await self._fail(log, chat_id, user_message, APOLOGY_EMPTY, diagnostics, debug, "empty completion")
        parsed = self.parser.parse(raw, self.response_format)
        diagnostics["parse_error"] = parsed.parse_error
        diagnostics["extracted_memories"] = [m.model_dump() for m in parsed.memories]

        self._advance(log, TurnState.PERSISTING)
        try:
            assistant_message = await self.repository.append_message(
                chat_id, Role.ASSISTANT, parsed.reply
            )
        except Exception as e:
            log.error("assistant_persist_failed", error=str(e), error_type=type(e).__name__)
            return await self._fail(log, chat_id, user_message, APOLOGY_ERROR, diagnostics, debug, str(e))

        self._advance(log, TurnState.EXTRACTING_MEMORIES)
        diagnostics["extraction_scheduled"] = self._schedule_extraction(
            chat_id, memory_service, turns + [assistant_message.as_turn()], parsed
        )

        self._advance(log, TurnState.DONE)
        log.info(
            "turn_completed",
            user_message_length=len(user_message.content),
            reply_length=len(assistant_message.content),
        )
        if debug:
            log.debug("turn_diagnostics", **diagnostics)
        return TurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            debug=diagnostics if debug else None,
        )

    @staticmethod
    def _advance(log, state: TurnState) -> None:
        log.debug("turn_state", state=state.value)

    async def _fail(
        self,
        log,
        chat_id: UUID,
        user_message: Message,
        apology: str,
        diagnostics: Dict[str, Any],
        debug: bool,
        error: str,
    ) -> TurnResult:
        """Store the apology reply for a turn that could not be answered."""
        self._advance(log, TurnState.FAILED)
        assistant_message = await self.repository.append_message(chat_id, Role.ASSISTANT, apology)
        self._advance(log, TurnState.DONE)
        diagnostics["error"] = error
        if debug:
            log.debug("turn_diagnostics", **diagnostics)
        return TurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            fallback=True,
            debug=diagnostics if debug else None,
        )

    def _schedule_extraction(
        self,
        chat_id: UUID,
        memory_service: MemoryService,
        conversation: List[Dict[str, str]],
        parsed: ParsedResponse,
    ) -> bool:
        """Queue memory storage for the finished exchange."""
        candidates = None
        if self.response_format == JSON_MODE:
            if not parsed.memories:
                return False
            candidates = list(parsed.memories)

        reply = conversation[-1]["content"]

        async def extract() -> None:
            await memory_service.extract_and_store_memories(conversation, reply, candidates)

        return self.runner.submit(f"extract_memories:{chat_id}", extract)
