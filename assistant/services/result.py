from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from assistant.errors import AssistantError, DeliveryError, RetrievalError, StorageError, UpstreamAIError

T = TypeVar("T")

ERROR_CODES = (
    (RetrievalError, "retrieval_error"),
    (UpstreamAIError, "ai_error"),
    (DeliveryError, "delivery_error"),
    (StorageError, "db_error"),
)


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_exception(exc: Exception) -> "Result[T]":
        """Map a pipeline exception onto a failure code; order matters (subclasses first)."""
        for exc_type, code in ERROR_CODES:
            if isinstance(exc, exc_type):
                return Result.failure(str(exc), code)
        if isinstance(exc, AssistantError):
            return Result.failure(exc.message, "assistant_error")
        return Result.failure(str(exc))

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
