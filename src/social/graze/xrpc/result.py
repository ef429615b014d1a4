"""Result container returned by every network operation.

A call either produces `Ok(value)` or `Err(error)`. Expected failures (non-2xx
responses, authentication-state misuse) are carried in `Err` instead of being
raised, so callers can branch on the outcome without try/except around every
request.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

T = TypeVar("T")
U = TypeVar("U")


class ErrorDetail(BaseModel):
    """Structured XRPC error body, e.g. `{"error": "InvalidRequest", "message": "..."}`."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    error: str
    message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("message", "error_description")
    )


class XrpcError(BaseModel):
    """Protocol error: a non-success HTTP status, with or without a structured body.

    `status_code` is always populated. `detail` is only present when the body
    decoded as an `ErrorDetail`; otherwise `raw_body` holds whatever text the
    server sent (if any).
    """

    model_config = ConfigDict(frozen=True)

    status_code: int
    detail: Optional[ErrorDetail] = None
    raw_body: Optional[str] = None

    @property
    def kind(self) -> Optional[str]:
        return self.detail.error if self.detail is not None else None

    @property
    def message(self) -> Optional[str]:
        return self.detail.message if self.detail is not None else None

    def __str__(self) -> str:
        return f"XrpcError {self.status_code} {self.kind} {self.message}"


class UsageError(BaseModel):
    """Authentication-state misuse, reported without attempting a network call."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str = ""

    def __str__(self) -> str:
        return f"UsageError {self.kind}: {self.message}"


ErrorType = Union[XrpcError, UsageError]


class ResultException(Exception):
    """Raised by `Result.unwrap()` when the result holds an error."""

    def __init__(self, error: ErrorType) -> None:
        super().__init__(str(error))
        self.error = error


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def map(self, func: Callable[[T], U]) -> "Ok[U]":
        return Ok(func(self.value))


@dataclass(frozen=True)
class Err:
    error: ErrorType

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def unwrap(self):
        raise ResultException(self.error)

    def unwrap_or(self, default: U) -> U:
        return default

    def map(self, func: Callable[[Any], Any]) -> "Err":
        return self


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class Success:
    """Marker value for operations that succeed without a payload."""


@dataclass(frozen=True, repr=False)
class Blob:
    data: bytes
    content_type: str = "application/octet-stream"

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"Blob({self.content_type}, {len(self.data)} bytes)"
