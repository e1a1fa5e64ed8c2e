"""System prompt assembly."""

CHAT_SYSTEM_PROMPT = """You are a helpful AI assistant. Respond naturally and conversationally to the user's messages.

Guidelines:
- Be helpful, friendly, and engaging
- Provide accurate and relevant information
- Use any provided memory context to personalize your responses
- Respond ONLY with your conversational reply - no JSON, no metadata, no technical artifacts
- Keep responses concise but informative

Your response should be natural conversation only."""

JSON_CHAT_SYSTEM_PROMPT = """You are a helpful AI assistant. Respond naturally and conversationally to the user's messages.

Guidelines:
- Be helpful, friendly, and engaging
- Provide accurate and relevant information
- Use any provided memory context to personalize your responses
- Keep responses concise but informative

Return a single JSON object and nothing else:
{"response": "<your reply to the user>", "memories": [{"content": "<fact about the user>", "category": "personal_facts|preferences|goals|events|skills|projects|name|friends|family", "importance": "high|medium|low", "type": "user|session"}]}

Only add memories for durable facts the user revealed in their latest message. Use an empty list when there is nothing worth remembering."""

MEMORY_SECTION_HEADER = "## What you know about the user"

MEMORY_USAGE_INSTRUCTION = (
    "Use this context to provide personalized responses. Reference relevant memories "
    "naturally without explicitly mentioning that you're using stored information."
)


def template_for(response_format: str) -> str:
    """Base template matching a response format."""
    if response_format == "json":
        return JSON_CHAT_SYSTEM_PROMPT
    return CHAT_SYSTEM_PROMPT


class PromptBuilder:
    """Builds the system prompt for a turn."""

    def build(self, base_template: str, memory_context: str = "") -> str:
        base = base_template or ""
        if not memory_context or not memory_context.strip():
            return base

        sections = [
            MEMORY_SECTION_HEADER,
            memory_context.strip(),
            MEMORY_USAGE_INSTRUCTION,
        ]
        if base.strip():
            sections.insert(0, base.rstrip())
        return "\n\n".join(sections)
