from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

UNKNOWN_ERROR = "unknown"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an operation the user can be refused for (limits, ownership, bad input).

    `error` is user-facing text; `error_code` is the stable reason for logs and tests.
    """

    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str, code: str = UNKNOWN_ERROR) -> "Result[T]":
        return cls(error=error, error_code=code or UNKNOWN_ERROR)

    def reply(self, success_text: str) -> str:
        """Text to send back: `success_text` on success, the refusal otherwise."""
        return success_text if self.ok else (self.error or "")
