"""Error taxonomy for the gateway.

Every failure the core can surface is one of these types. The HTTP layer maps
them to OpenAI-style error bodies via `error_status()`.
"""

from __future__ import annotations

from typing import Literal

AuthReason = Literal["upstream_status", "missing_header", "malformed_challenge"]
UpstreamCategory = Literal[
    "rate_limited",
    "http_status",
    "upstream_reported_error",
    "timeout",
    "network",
]

# Default wait when the upstream answers 429 without a retry-after header
DEFAULT_RETRY_AFTER_MS = 60_000


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(GatewayError):
    """Raised when the upstream handshake fails or returns a malformed challenge."""

    def __init__(self, message: str, reason: AuthReason, status_code: int | None = None):
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


class UpstreamError(GatewayError):
    """Raised when the upstream chat call fails."""

    def __init__(
        self,
        message: str,
        category: UpstreamCategory,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.response_body = response_body

    @property
    def retryable(self) -> bool:
        return self.category == "rate_limited"


class ValidationError(GatewayError):
    """Raised when an inbound request is malformed."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) if errors else "invalid request")
        self.errors = errors


class ProtocolError(GatewayError):
    """Raised when an upstream event line cannot be decoded."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


# Error type mapping from HTTP status to OpenAI error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "api_error",
    504: "api_error",
}


def error_status(error: Exception) -> tuple[int, str, str | None]:
    """Map an exception to (http_status, error_type, code)."""
    if isinstance(error, ValidationError):
        return 400, ERROR_TYPE_MAP[400], None
    if isinstance(error, AuthError):
        return 502, "authentication_error", error.reason
    if isinstance(error, UpstreamError):
        if error.category == "rate_limited":
            return 429, ERROR_TYPE_MAP[429], error.category
        if error.category == "timeout":
            return 504, ERROR_TYPE_MAP[504], error.category
        return 502, ERROR_TYPE_MAP[502], error.category
    return 500, ERROR_TYPE_MAP[500], None
