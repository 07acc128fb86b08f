"""Shared error definitions for the gateway and its lifecycle manager.

Configuration and discovery errors are recovered locally (logged, entry
skipped). Routing and upstream errors are turned into JSON responses for the
HTTP caller. Process and port errors propagate to whoever started the gateway.
"""

from __future__ import annotations

from typing import Any, Literal

Convention = Literal["openai", "anthropic"]

# Error type mapping from upstream status to Anthropic error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    408: "timeout_error",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "overloaded_error",
    504: "api_error",
}


class PassyError(Exception):
    """Base exception for gateway errors."""

    pass


class ConfigurationError(PassyError):
    """Malformed or incomplete provider/alias entry."""

    pass


class DiscoveryError(PassyError):
    """A capability probe timed out or returned a non-success response."""

    def __init__(self, provider: str, fmt: str, reason: str):
        super().__init__(f"{provider}: {fmt} probe failed ({reason})")
        self.provider = provider
        self.format = fmt
        self.reason = reason


class InvalidRequestError(PassyError):
    """Inbound request body could not be read or parsed."""

    def __init__(self, message: str, status: int = 400, code: str = "invalid_request"):
        super().__init__(message)
        self.status = status
        self.code = code


class RoutingError(PassyError):
    """Unknown alias or no resolvable target."""

    def __init__(self, message: str, status: int = 404, code: str = "model_not_found"):
        super().__init__(message)
        self.status = status
        self.code = code


class UpstreamError(PassyError):
    """Raised when an upstream provider fails with a classifiable error."""

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: str | None = None,
        failure_class: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.failure_class = failure_class


class AggregateFailure(PassyError):
    """Every target of an alias failed with a qualifying error."""

    status = 502

    def __init__(self, alias: str, details: list[str]):
        super().__init__(f"All providers failed for '{alias}'")
        self.alias = alias
        self.details = details


class ProcessError(PassyError):
    """The gateway subprocess failed to start or exited unexpectedly."""

    pass


class GatewayNotReadyError(ProcessError):
    """The gateway URL was requested before ready() completed."""

    pass


class PortError(PassyError):
    """No free port was found within the retry bound."""

    pass


def error_body(
    convention: Convention,
    message: str,
    status: int,
    code: str | None = None,
    details: list[str] | None = None,
) -> dict[str, Any]:
    """Build an error envelope in the caller's API convention.

    Args:
        convention: "openai" for /v1/chat/completions callers,
            "anthropic" for /v1/messages callers
        message: Human readable message
        status: HTTP status the envelope is sent with
        code: Short machine readable code (e.g. "invalid_json")
        details: Optional per-target failure reasons

    Returns:
        JSON-serializable error dict
    """
    error_type = ERROR_TYPE_MAP.get(status, "api_error")
    body: dict[str, Any]
    if convention == "anthropic":
        body = {"type": "error", "error": {"type": error_type, "message": message}}
        if code:
            body["error"]["code"] = code
    else:
        body = {"error": {"message": message, "type": error_type, "code": code}}
    if details is not None:
        body["details"] = details
    return body
