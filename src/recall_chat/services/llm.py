"""Chat completion client backed by Google's Gemini models."""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import Settings
from ..domain.errors import CompletionUnavailable

logger = structlog.get_logger()

# Connection and timeout failures. Everything else fails the call immediately.
TRANSIENT_ERRORS: Tuple[type, ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    exceptions.ServiceUnavailable,
    exceptions.DeadlineExceeded,
)

_GEMINI_ROLES = {"user": "user", "assistant": "model"}


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with proportional jitter."""

    attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    jitter: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            backoff_factor=settings.retry_backoff_factor,
            jitter=settings.retry_jitter,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 for the first retry)."""
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)


@dataclass
class CompletionOptions:
    max_tokens: int = 500
    temperature: float = 0.7
    response_format: str = "text"


class CompletionClient:
    """Wraps a Gemini chat completion with timeouts and retries."""

    def __init__(
        self,
        settings: Settings,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        genai.configure(api_key=settings.gemini_api_key)
        self.model_name = settings.completion_model
        self.timeout = settings.completion_timeout
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep
        logger.info(
            "llm_service_init",
            model=self.model_name,
            api_key_configured=bool(settings.gemini_api_key),
        )

    @staticmethod
    def _to_contents(
        system_prompt: str, history: Sequence[Dict[str, str]]
    ) -> Tuple[str, List[Dict[str, Any]]]:
        """Split history into a system instruction and Gemini ``contents``."""
        instructions = [system_prompt] if system_prompt else []
        contents: List[Dict[str, Any]] = []
        for turn in history:
            role = turn.get("role")
            content = turn.get("content") or ""
            if role == "system":
                if content:
                    instructions.append(content)
                continue
            if role not in _GEMINI_ROLES or not content:
                continue
            contents.append({"role": _GEMINI_ROLES[role], "parts": [content]})
        return "\n\n".join(instructions), contents

    async def _generate(
        self,
        system_instruction: str,
        contents: List[Dict[str, Any]],
        options: CompletionOptions,
    ) -> str:
        """One request to the model."""
        model = genai.GenerativeModel(
            self.model_name, system_instruction=system_instruction or None
        )
        config = genai.GenerationConfig(
            max_output_tokens=options.max_tokens,
            temperature=options.temperature,
            response_mime_type="application/json" if options.response_format == "json" else "text/plain",
        )
        response = await model.generate_content_async(
            contents,
            generation_config=config,
            request_options={"timeout": self.timeout},
        )
        try:
            return response.text
        except ValueError:
            # Blocked or empty candidates carry no text.
            logger.warning("completion_without_text", model=self.model_name)
            return ""

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, str]],
        options: Optional[CompletionOptions] = None,
    ) -> str:
        """Run a completion, retrying transient failures.

        Raises CompletionUnavailable when retries are exhausted or the
        upstream error is not transient.
        """
        options = options or CompletionOptions()
        system_instruction, contents = self._to_contents(system_prompt, history)
        attempts = self.retry_policy.attempts

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._generate(system_instruction, contents, options),
                    timeout=self.timeout,
                )
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    "completion_attempt_failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
                if attempt == attempts:
                    raise CompletionUnavailable(
                        f"completion failed after {attempts} attempts"
                    ) from e
                await self._sleep(self.retry_policy.delay(attempt))
            except Exception as e:
                logger.error("completion_failed", error=str(e), error_type=type(e).__name__)
                raise CompletionUnavailable(f"completion failed: {e}") from e

        raise CompletionUnavailable("completion was not attempted")
