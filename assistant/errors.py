from typing import Optional


class AssistantError(Exception):
    """Base class for pipeline errors."""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EventValidationError(AssistantError):
    """Inbound gateway event could not be decoded."""


class StorageError(AssistantError):
    """Relational store or cache unavailable. The caller should ask for redelivery."""

    retryable = True


class UpstreamAIError(AssistantError):
    """Embedding, generation, transcription or vision provider failed or timed out."""

    retryable = True

    def __init__(self, provider: str, operation: str, message: str):
        self.provider = provider
        self.operation = operation
        super().__init__(f"{provider} {operation} failed: {message}")


class RetrievalError(UpstreamAIError):
    """Knowledge search could not embed the query."""

    def __init__(self, message: str):
        super().__init__("knowledge", "search", message)


class DeliveryError(AssistantError):
    """Messaging gateway refused or did not acknowledge a send."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SummaryRequestError(AssistantError):
    """On-demand summary request rejected by a business rule."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)
