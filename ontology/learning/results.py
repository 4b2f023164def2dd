"""Shared result type for learning-layer operations."""

from dataclasses import dataclass
from typing import Any

from ..resilience.error_handler import ErrorCode, error_code_of


@dataclass
class OperationResult:
    """Outcome of a component operation; business failures never raise."""

    success: bool = True
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def failed(cls, error: Exception | str, code: ErrorCode | None = None, **kwargs):
        if isinstance(error, Exception):
            message = getattr(error, "message", None) or str(error)
            code = code or error_code_of(error)
        else:
            message = error
        return cls(success=False, error=message, error_code=code or ErrorCode.INTERNAL, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        data = {"success": self.success}
        if not self.success:
            data["error"] = self.error
            data["error_code"] = self.error_code.value if self.error_code else None
        return data
