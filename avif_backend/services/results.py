"""Typed stage outcomes.

Every pipeline stage returns either its value or a ``Failure``. Callers
branch with ``is_failure`` instead of catching exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RESOURCE = "resource"
    CODEC = "codec"
    REMOTE = "remote"
    TRANSPORT = "transport"
    INTERNAL = "internal"


class ErrorKind(str, Enum):
    SOURCE_UNREADABLE = "SourceUnreadable"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    DIMENSION_EXCEEDED = "DimensionExceeded"
    DECODE_ERROR = "DecodeError"
    ENCODE_ERROR = "EncodeError"
    WRITE_ERROR = "WriteError"
    UNSUPPORTED_ENHANCEMENT = "UnsupportedEnhancement"
    INVALID_CREDENTIALS = "InvalidCredentials"
    REMOTE_ERROR = "RemoteError"
    TRANSPORT_ERROR = "TransportError"
    INTERNAL_ERROR = "InternalError"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES = {
    ErrorKind.SOURCE_UNREADABLE: ErrorCategory.RESOURCE,
    ErrorKind.UNSUPPORTED_FORMAT: ErrorCategory.VALIDATION,
    ErrorKind.DIMENSION_EXCEEDED: ErrorCategory.VALIDATION,
    ErrorKind.DECODE_ERROR: ErrorCategory.CODEC,
    ErrorKind.ENCODE_ERROR: ErrorCategory.CODEC,
    ErrorKind.WRITE_ERROR: ErrorCategory.RESOURCE,
    ErrorKind.UNSUPPORTED_ENHANCEMENT: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_CREDENTIALS: ErrorCategory.VALIDATION,
    ErrorKind.REMOTE_ERROR: ErrorCategory.REMOTE,
    ErrorKind.TRANSPORT_ERROR: ErrorCategory.TRANSPORT,
    ErrorKind.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}


@dataclass(frozen=True)
class Failure:
    """A tagged stage error."""

    kind: ErrorKind
    detail: str = ""
    status_code: Optional[int] = None

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.kind.value}({self.status_code}): {self.detail}"
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


def is_failure(value: Any) -> bool:
    return isinstance(value, Failure)


__all__ = ["ErrorCategory", "ErrorKind", "Failure", "is_failure"]
