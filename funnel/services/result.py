from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    IGNORED = "ignored"
    INVALID_TRANSITION = "invalid_transition"
    DB_ERROR = "db_error"
    UNKNOWN = "unknown"


@dataclass
class Result(Generic[T]):
    """Outcome of an engine operation; engine operations never raise to their callers."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: ErrorCode | str = ErrorCode.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=ErrorCode(code).value)

    @property
    def ignored(self) -> bool:
        """A well-formed event the current state makes a no-op."""
        return self.error_code == ErrorCode.IGNORED.value or (
            self.ok and isinstance(self.value, dict) and self.value.get("action") == "ignored"
        )

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
