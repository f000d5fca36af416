from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

NOT_AUTHENTICATED = "not_authenticated"


class BackendError(Exception):
    """Any failure reported by, or while reaching, the messaging backend."""

    def __init__(self, *, code: str, message: str, status_code: int | None = None) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(slots=True)
class OperationResult(Generic[T]):
    data: T | None = None
    error: str | None = None
    code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T | None = None) -> OperationResult[T]:
        return cls(data=data)

    @classmethod
    def failure(cls, code: str, message: str) -> OperationResult[T]:
        return cls(error=message, code=code)

    @classmethod
    def from_error(cls, exc: BackendError) -> OperationResult[T]:
        return cls(error=exc.message, code=exc.code)

    @classmethod
    def not_authenticated(cls) -> OperationResult[T]:
        return cls(error="User not authenticated", code=NOT_AUTHENTICATED)
