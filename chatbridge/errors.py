"""Exceptions raised by chatbridge."""

from __future__ import annotations


class ChatBridgeError(Exception):
    """Base exception for all chatbridge errors."""

    pass


class ConfigError(ChatBridgeError):
    """Raised when a configuration file or model entry is invalid."""

    pass


class InvalidRequestError(ChatBridgeError):
    """Raised before any network call when a request cannot be sent."""

    pass


class UpstreamError(ChatBridgeError):
    """
    Raised when the endpoint answers with a non-success status.

    The message concatenates status, reason phrase and the raw error body so
    the caller can log or display it as-is.
    """

    def __init__(self, status_code: int, reason: str, body: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        message = f"Upstream API error: {status_code} {reason}".rstrip()
        if body:
            message += f"\n{body}"
        super().__init__(message)


class ToolCallArgumentsError(ChatBridgeError):
    """Raised when a tool call still has invalid JSON arguments at a finish boundary."""

    def __init__(self, index: int, arguments: str) -> None:
        self.index = index
        self.arguments = arguments
        super().__init__(
            f"Invalid JSON for tool call idx={index}: {arguments[:200]!r}"
        )


class TransportError(ChatBridgeError):
    """Raised when the endpoint cannot be reached or the stream breaks off."""

    pass
