from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failure is expected, not exceptional."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def success(value: T = None, **context: Any) -> "Result[T]":
        return Result(ok=True, value=value, context=context)

    @staticmethod
    def failure(error: str, code: str = "unknown", **context: Any) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, context=context)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def as_log_context(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, **self.context}
        if not self.ok:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data
