"""Error taxonomy for the chat service.

Only ``ValidationError`` and ``ChatNotFound`` are meant to reach an HTTP
caller. The rest are recovered inside the service layer.
"""


class ChatServiceError(Exception):
    """Base class for service errors."""


class ValidationError(ChatServiceError):
    """User input was empty or otherwise unusable."""


class ChatNotFound(ChatServiceError):
    """The referenced chat does not exist."""


class CompletionUnavailable(ChatServiceError):
    """The completion backend failed after retries, or failed non-transiently."""


class ResponseParseError(ChatServiceError):
    """Model output did not match the expected JSON contract."""


class MemoryExtractionError(ChatServiceError):
    """Background memory extraction or storage failed."""


class StoreCapacityError(ChatServiceError):
    """A memory scope is full and no record could be evicted."""
