"""
Error taxonomy for the memory proxy.

Every failure a request handler can observe carries an ``ErrorKind`` tag:

- bad_request: required fields missing, rejected before any I/O
- upstream_error: completion provider failed or timed out, nothing stored
- embedding_unavailable: recovered locally (keyword recall, unembedded archival)
- token_count_failure: fatal for the request, the budget cannot be enforced
- store_failure: any persistence read/write error
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Kind tag surfaced to callers."""
    BAD_REQUEST = "bad_request"
    UPSTREAM_ERROR = "upstream_error"
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"
    TOKEN_COUNT_FAILURE = "token_count_failure"
    STORE_FAILURE = "store_failure"


class MemoryProxyError(Exception):
    """Base exception for memory proxy errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.kind = kind
        self.context = context or {}
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]
        if self.original_error:
            parts.append(f"Cause: {self.original_error}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Structured form for a request handler."""
        return {"error": self.kind.value, "detail": self.message}


class BadRequestError(MemoryProxyError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorKind.BAD_REQUEST, context)


class UpstreamError(MemoryProxyError):
    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, ErrorKind.UPSTREAM_ERROR, context, original_error)


class EmbeddingUnavailableError(MemoryProxyError):
    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message, ErrorKind.EMBEDDING_UNAVAILABLE, context, original_error
        )


class TokenCountError(MemoryProxyError):
    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message, ErrorKind.TOKEN_COUNT_FAILURE, context, original_error
        )


class StoreError(MemoryProxyError):
    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, ErrorKind.STORE_FAILURE, context, original_error)
